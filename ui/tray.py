"""Tray icon – on/off toggle and resolution menu for the camera bridge."""

from __future__ import annotations

import logging
from typing import Any

import gi

gi.require_version("Gtk", "3.0")
gi.require_version("AyatanaAppIndicator3", "0.1")

from gi.repository import AyatanaAppIndicator3, GLib, Gtk  # noqa: E402

from constants import APP_ICON, APP_ID, APP_NAME  # noqa: E402
from core.control_server import ControlClient  # noqa: E402
from ui.tray_presenter import TrayPresenter, TrayView  # noqa: E402
from utils.async_worker import run_command  # noqa: E402
from utils.i18n import _  # noqa: E402

log = logging.getLogger(__name__)

REFRESH_SECONDS = 2


class CameraTray:
    """AppIndicator menu; a thin client of the control socket."""

    def __init__(self, client: ControlClient, resolutions: list[str]) -> None:
        self._client = client
        self._presenter = TrayPresenter()
        self._busy = False

        self._indicator = AyatanaAppIndicator3.Indicator.new(
            APP_ID,
            APP_ICON,
            AyatanaAppIndicator3.IndicatorCategory.HARDWARE,
        )
        self._indicator.set_title(APP_NAME)
        self._indicator.set_status(AyatanaAppIndicator3.IndicatorStatus.ACTIVE)

        menu = Gtk.Menu()
        self._status_item = Gtk.MenuItem(label=_("Camera: …"))
        self._status_item.set_sensitive(False)
        menu.append(self._status_item)

        self._detail_item = Gtk.MenuItem(label="")
        self._detail_item.set_sensitive(False)
        menu.append(self._detail_item)

        self._toggle_item = Gtk.MenuItem(label=_("Turn camera on"))
        self._toggle_item.connect("activate", self._on_toggle)
        menu.append(self._toggle_item)

        menu.append(Gtk.SeparatorMenuItem())

        res_item = Gtk.MenuItem(label=_("Resolution"))
        res_menu = Gtk.Menu()
        self._res_items: dict[str, Gtk.CheckMenuItem] = {}
        for res in resolutions:
            item = Gtk.CheckMenuItem(label=res)
            item.set_draw_as_radio(True)
            item.connect("activate", self._on_resolution, res)
            res_menu.append(item)
            self._res_items[res] = item
        res_item.set_submenu(res_menu)
        menu.append(res_item)

        menu.append(Gtk.SeparatorMenuItem())
        quit_item = Gtk.MenuItem(label=_("Quit"))
        quit_item.connect("activate", lambda *_: Gtk.main_quit())
        menu.append(quit_item)

        menu.show_all()
        self._detail_item.hide()
        self._indicator.set_menu(menu)
        self._updating = False

    def run(self) -> None:
        self._refresh()
        GLib.timeout_add_seconds(REFRESH_SECONDS, self._refresh)
        Gtk.main()

    # -- callbacks -----------------------------------------------------------

    def _refresh(self) -> bool:
        if not self._busy:
            self._busy = True
            run_command(self._client, "status", self._on_reply)
        return True

    def _on_toggle(self, _item: Gtk.MenuItem) -> None:
        self._busy = True
        run_command(self._client, self._presenter.toggle_command(), self._on_reply)

    def _on_resolution(self, item: Gtk.CheckMenuItem, res: str) -> None:
        if self._updating or not item.get_active():
            return
        width, height = (int(v) for v in res.split("x"))
        self._busy = True
        run_command(self._client, "set-resolution", self._on_reply, width=width, height=height)

    def _on_reply(self, reply: dict[str, Any]) -> None:
        self._busy = False
        self._render(self._presenter.apply_reply(reply))

    def _render(self, view: TrayView) -> None:
        self._indicator.set_icon_full(view.icon, view.status_text)
        self._status_item.set_label(view.status_text)
        self._toggle_item.set_label(view.toggle_text)
        self._toggle_item.set_sensitive(view.toggle_enabled)
        if view.detail:
            self._detail_item.set_label(view.detail[:80])
            self._detail_item.show()
        else:
            self._detail_item.hide()
        self._updating = True
        for res, item in self._res_items.items():
            item.set_active(res == view.resolution)
        self._updating = False


def run_tray(socket_path: str | None, resolutions: list[str]) -> int:
    tray = CameraTray(ControlClient(socket_path), resolutions)
    tray.run()
    return 0
