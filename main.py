#!/usr/bin/env python3
"""Camera Bridge – keeps the laptop camera available on a v4l2loopback device."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from typing import Any

from constants import APP_NAME, APP_VERSION, ExitCode
from core.errors import BridgeError
from core.models import parse_resolution
from utils.i18n import _
from utils.logging_setup import setup_logging
from utils.settings_manager import SettingsManager

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="camera-bridge", description=_(__doc__.strip()))
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--config", help=_("settings file (default: ~/.config/camera-bridge/settings.json)"))
    parser.add_argument("--socket", help=_("control socket path"))
    parser.add_argument("-v", "--verbose", action="store_true", help=_("debug logging"))

    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help=_("run the bridge service"))
    serve.add_argument("--no-autostart", action="store_true", help=_("wait for an explicit enable"))
    sub.add_parser("enable", help=_("turn the camera bridge on"))
    sub.add_parser("disable", help=_("turn the camera bridge off"))
    status = sub.add_parser("status", help=_("show bridge status"))
    status.add_argument("--json", action="store_true", help=_("print the raw reply"))
    res = sub.add_parser("set-resolution", help=_("change the output resolution"))
    res.add_argument("resolution", help=_("WIDTHxHEIGHT, e.g. 1280x720"))
    sub.add_parser("doctor", help=_("check system prerequisites"))
    sub.add_parser("tray", help=_("show the tray icon"))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, to_file=args.command == "serve")

    if args.command == "serve":
        return serve(args)
    if args.command == "doctor":
        return doctor(args)
    if args.command == "tray":
        return tray(args)
    return control(args)


def serve(args: argparse.Namespace) -> int:
    import gi

    gi.require_version("GLib", "2.0")
    from gi.repository import GLib

    from core.bridge_service import build_service
    from core.control_server import ControlServer

    settings = SettingsManager(args.config)
    try:
        config = settings.service_config()
    except BridgeError as exc:
        log.error("Invalid configuration in %s: %s", settings.path, exc)
        return int(exc.exit_code)

    service = build_service(config)
    service.set_config_listener(settings.remember)
    server = ControlServer(service, args.socket)
    if not server.start():
        log.error("Could not open control socket %s", server.socket_path)
        service.shutdown()
        return int(ExitCode.FACILITY_UNAVAILABLE)

    if config.autostart and not args.no_autostart:
        try:
            service.enable()
        except BridgeError as exc:
            # keep serving so status and a later enable can report/retry
            log.error("Autostart failed: %s", exc)

    loop = GLib.MainLoop()

    def _quit() -> bool:
        log.info("Shutting down")
        loop.quit()
        return GLib.SOURCE_REMOVE

    GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, signal.SIGINT, _quit)
    GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, signal.SIGTERM, _quit)
    try:
        loop.run()
    finally:
        server.stop()
        service.shutdown()
    return int(ExitCode.SUCCESS)


def control(args: argparse.Namespace, client: Any = None) -> int:
    from core.control_server import ControlClient

    client = client or ControlClient(args.socket)
    params: dict[str, Any] = {}
    if args.command == "set-resolution":
        try:
            params["width"], params["height"] = parse_resolution(args.resolution)
        except BridgeError as exc:
            print(exc, file=sys.stderr)
            return int(exc.exit_code)

    reply = client.call(args.command, **params)
    if getattr(args, "json", False):
        print(json.dumps(reply, indent=2))
    else:
        _print_reply(reply)
    return int(reply.get("code", ExitCode.FACILITY_UNAVAILABLE))


def _print_reply(reply: dict[str, Any]) -> None:
    status = reply.get("status")
    if status:
        print(_("State:      %s") % status["state"])
        print(_("Enabled:    %s") % (_("yes") if status["enabled"] else _("no")))
        print(_("Device:     %s") % status["device"])
        print(_("Resolution: %s") % status["resolution"])
        if status.get("last_error"):
            print(_("Last error: %s") % status["last_error"])
        if status.get("warning"):
            print(_("Warning:    %s") % status["warning"])
    if reply.get("error"):
        print(_("Error: %s") % reply["error"], file=sys.stderr)


def doctor(args: argparse.Namespace) -> int:
    from utils import dependency_checker

    settings = SettingsManager(args.config)
    deps = dependency_checker.check_all(settings.get("plugin-path"))
    for name, ok in deps.items():
        print(f"  [{'x' if ok else ' '}] {name}")
    ipu = dependency_checker.detect_ipu6()
    if ipu:
        print(_("IPU6 device 8086:%s (HAL variant %s)") % ipu)
    else:
        print(_("No Intel IPU6 device found"))
    bridge = dependency_checker.detect_usb_bridge()
    if bridge == "usbio":
        print(_("Lattice USB-IO bridge detected"))
    elif bridge == "ljca":
        print(_("Intel LJCA bridge detected; this stack targets Lattice USB-IO (Meteor Lake)"))
    else:
        print(_("No USB-IO bridge detected; the sensor may use a different power path"))
    _print_permissions()
    missing = dependency_checker.missing(deps)
    if missing:
        print(_("Missing: %s") % ", ".join(missing), file=sys.stderr)
        return int(ExitCode.FACILITY_UNAVAILABLE)
    return int(ExitCode.SUCCESS)


def _print_permissions() -> None:
    from core.backends.permission_store import PortalPermissionStore

    try:
        permissions = PortalPermissionStore().lookup()
    except BridgeError as exc:
        print(_("Camera permissions unavailable: %s") % exc)
        return
    print(_("Camera permissions:"))
    for app_id, values in sorted(permissions.items()):
        print(f"  {app_id}: {', '.join(values)}")


def tray(args: argparse.Namespace) -> int:
    from ui.tray import run_tray

    settings = SettingsManager(args.config)
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    return run_tray(args.socket, list(settings.get("resolutions")))


if __name__ == "__main__":
    raise SystemExit(main())
