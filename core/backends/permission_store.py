"""XDG portal permission store – camera grants over the session bus."""

from __future__ import annotations

import logging

import gi

gi.require_version("Gio", "2.0")
gi.require_version("GLib", "2.0")

from gi.repository import Gio, GLib  # noqa: E402

from core.errors import BrokerUnavailable  # noqa: E402

log = logging.getLogger(__name__)

_BUS_NAME = "org.freedesktop.impl.portal.PermissionStore"
_OBJECT_PATH = "/org/freedesktop/impl/portal/PermissionStore"
_TABLE = "devices"
_RESOURCE = "camera"
_TIMEOUT_MS = 5000


class PortalPermissionStore:
    """Writes ``devices/camera`` entries the camera portal consults."""

    def __init__(self, connection: Gio.DBusConnection | None = None) -> None:
        self._connection = connection
        self._proxy: Gio.DBusProxy | None = None

    def set_permission(self, app_id: str, allowed: bool) -> None:
        self._call(
            "SetPermission",
            GLib.Variant("(sbssas)", (_TABLE, True, _RESOURCE, app_id, ["yes" if allowed else "no"])),
        )

    def delete_permission(self, app_id: str) -> None:
        self._call("DeletePermission", GLib.Variant("(sss)", (_TABLE, _RESOURCE, app_id)))

    def lookup(self) -> dict[str, list[str]]:
        """Return the current ``{app_id: permissions}`` map for the camera."""
        result = self._call("Lookup", GLib.Variant("(ss)", (_TABLE, _RESOURCE)))
        permissions, _data = result.unpack()
        return permissions

    # -- private -------------------------------------------------------------

    def _call(self, method: str, params: GLib.Variant) -> GLib.Variant:
        try:
            proxy = self._get_proxy()
            return proxy.call_sync(method, params, Gio.DBusCallFlags.NONE, _TIMEOUT_MS, None)
        except GLib.Error as exc:
            # a restarted broker leaves a stale proxy behind
            self._proxy = None
            raise BrokerUnavailable(f"PermissionStore.{method}: {exc.message}") from exc

    def _get_proxy(self) -> Gio.DBusProxy:
        if self._proxy is None:
            connection = self._connection or Gio.bus_get_sync(Gio.BusType.SESSION, None)
            self._proxy = Gio.DBusProxy.new_sync(
                connection,
                Gio.DBusProxyFlags.DO_NOT_LOAD_PROPERTIES,
                None,
                _BUS_NAME,
                _OBJECT_PATH,
                _BUS_NAME,
                None,
            )
            log.debug("Connected to %s", _BUS_NAME)
        return self._proxy
