"""Async control calls – query the bridge off the GTK thread, deliver replies via GLib.idle_add."""

import logging
import threading
from typing import Any, Callable

from gi.repository import GLib

from constants import ExitCode

log = logging.getLogger(__name__)

Reply = dict[str, Any]


def run_command(
    client: Any,
    command: str,
    on_reply: Callable[[Reply], Any],
    **params: Any,
) -> None:
    """Send *command* from a daemon thread; *on_reply* runs on the main loop."""

    def _worker() -> None:
        try:
            reply = client.call(command, **params)
        except Exception as exc:
            log.debug("Control call %s failed", command, exc_info=True)
            reply = {"code": int(ExitCode.FACILITY_UNAVAILABLE), "status": None, "error": str(exc)}
        GLib.idle_add(_deliver, on_reply, reply)

    threading.Thread(target=_worker, name=f"control-{command}", daemon=True).start()


def _deliver(on_reply: Callable[[Reply], Any], reply: Reply) -> bool:
    on_reply(reply)
    return False
