"""Tray presenter – turns control replies into what the tray icon shows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from constants import ExitCode, PipelineState
from core.models import ServiceStatus
from utils.i18n import _

_STATE_LABELS = {
    PipelineState.STOPPED: _("Off"),
    PipelineState.STARTING: _("Starting…"),
    PipelineState.RUNNING: _("On"),
    PipelineState.DEGRADED: _("Recovering…"),
    PipelineState.FAILED_PERMANENTLY: _("Failed"),
}

_STATE_ICONS = {
    PipelineState.STOPPED: "camera-disabled-symbolic",
    PipelineState.STARTING: "camera-web-symbolic",
    PipelineState.RUNNING: "camera-web",
    PipelineState.DEGRADED: "camera-web-symbolic",
    PipelineState.FAILED_PERMANENTLY: "dialog-warning",
}


@dataclass(frozen=True)
class TrayView:
    icon: str
    status_text: str
    toggle_text: str
    toggle_enabled: bool
    resolution: str
    detail: str | None = None


class TrayPresenter:
    """Keeps the last authoritative status; never tracks state of its own."""

    def __init__(self) -> None:
        self._status: ServiceStatus | None = None
        self._error: str | None = None

    @property
    def status(self) -> ServiceStatus | None:
        return self._status

    def apply_reply(self, reply: dict[str, Any]) -> TrayView:
        status = reply.get("status")
        self._status = ServiceStatus.from_dict(status) if status else None
        self._error = reply.get("error")
        if reply.get("code") == ExitCode.FACILITY_UNAVAILABLE and self._status is None:
            self._error = self._error or _("Camera service is not running")
        return self.view()

    def view(self) -> TrayView:
        status = self._status
        if status is None:
            return TrayView(
                icon="dialog-warning",
                status_text=_("Camera: unavailable"),
                toggle_text=_("Turn camera on"),
                toggle_enabled=False,
                resolution="",
                detail=self._error,
            )
        active = status.enabled and status.state is not PipelineState.FAILED_PERMANENTLY
        return TrayView(
            icon=_STATE_ICONS[status.state],
            status_text=_("Camera: %s") % _STATE_LABELS[status.state],
            toggle_text=_("Turn camera off") if active else _("Turn camera on"),
            toggle_enabled=True,
            resolution=status.resolution,
            detail=self._error or status.last_error or status.warning,
        )

    def toggle_command(self) -> str:
        """``disable`` while the bridge is wanted on, otherwise ``enable``."""
        status = self._status
        if status and status.enabled and status.state is not PipelineState.FAILED_PERMANENTLY:
            return "disable"
        return "enable"
