"""Bridge service – the control surface over device, pipeline and session bridge."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from constants import ExitCode, PipelineState
from core.errors import BridgeError, BrokerUnavailable, DeviceBusy
from core.models import ServiceConfig, ServiceStatus
from core.pipeline_controller import PipelineController
from core.session_bridge import DeviceDescriptor, SessionBridge
from core.virtual_camera import DeviceHandle, VirtualDeviceManager

log = logging.getLogger(__name__)


class CameraBridgeService:
    """Enable/disable/status for the whole bridge.

    The controller is the only source of pipeline state; this class keeps
    just the user's intent (enabled or not) and the last bridge warning.
    """

    def __init__(
        self,
        config: ServiceConfig,
        devices: VirtualDeviceManager,
        controller: PipelineController,
        bridge: SessionBridge,
    ) -> None:
        self._config = config
        self._devices = devices
        self._controller = controller
        self._bridge = bridge
        self._lock = threading.RLock()
        self._enabled = False
        self._handle: DeviceHandle | None = None
        self._warning: str | None = None
        self._config_listener: Callable[[ServiceConfig], None] | None = None

        self._reconfigure_lock = threading.Lock()
        self._pending: ServiceConfig | None = None

        # bus calls may block for seconds; keep them off the monitor thread
        self._bridge_worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-bridge")
        controller.set_callbacks(on_running=self._on_running, on_inactive=self._on_inactive)

    # -- public API ----------------------------------------------------------

    @property
    def config(self) -> ServiceConfig:
        return self._config

    def set_config_listener(self, listener: Callable[[ServiceConfig], None] | None) -> None:
        self._config_listener = listener

    def enable(self) -> ServiceStatus:
        with self._lock:
            state = self._controller.health_check()
            if self._enabled and state not in (PipelineState.STOPPED, PipelineState.FAILED_PERMANENTLY):
                return self.status()
            self._config.validate()
            try:
                self._handle = self._devices.ensure(self._config.device)
                self._controller.start(self._config.pipeline, self._handle)
            except BridgeError:
                self._abandon()
                raise
            self._enabled = True
            self._warning = None
            log.info("Camera bridge enabled on %s", self._handle.path)
        return self.status()

    def disable(self) -> ServiceStatus:
        with self._lock:
            if (
                not self._enabled
                and self._handle is None
                and self._controller.health_check() is PipelineState.STOPPED
            ):
                return self.status()
            self._controller.stop()
            self._enabled = False
            self._release_device()
            log.info("Camera bridge disabled")
        return self.status()

    def status(self) -> ServiceStatus:
        with self._lock:
            snap = self._controller.snapshot()
            config = self._config
            output = config.pipeline.output
            return ServiceStatus(
                state=snap.state,
                last_error=snap.last_error,
                enabled=self._enabled,
                device=config.device.path,
                resolution=f"{output.width}x{output.height}",
                warning=self._warning,
            )

    def set_resolution(self, width: int, height: int) -> ServiceStatus:
        return self.reconfigure(self._config.with_resolution(width, height))

    def reconfigure(self, config: ServiceConfig) -> ServiceStatus:
        """Apply *config*; concurrent callers collapse onto the newest request."""
        config.validate()
        with self._lock:
            self._pending = config
        with self._reconfigure_lock:
            with self._lock:
                if self._pending is None:
                    # a later request already applied its config
                    return self.status()
                config, self._pending = self._pending, None
            self._apply(config)
        if self._config_listener:
            self._config_listener(config)
        return self.status()

    def shutdown(self) -> None:
        try:
            self.disable()
        except BridgeError as exc:
            log.warning("Shutdown: %s", exc)
        try:
            revoked = self._bridge.revoke_all(self._config.device.index)
        except BrokerUnavailable as exc:
            log.warning("Could not revoke camera permissions: %s", exc)
        else:
            if revoked:
                log.info("Revoked %d camera permission(s)", revoked)
        self._bridge_worker.shutdown(wait=True)

    def drain(self, timeout: float | None = None) -> None:
        """Wait until queued session bridge work has run."""
        self._bridge_worker.submit(lambda: None).result(timeout=timeout)

    # -- private -------------------------------------------------------------

    def _apply(self, config: ServiceConfig) -> None:
        with self._lock:
            if not self._enabled:
                self._config = config
                return
            try:
                if config.device == self._config.device and self._handle is not None:
                    log.info("Reconfiguring pipeline in place")
                    self._controller.reconfigure(config.pipeline, self._handle)
                else:
                    log.info("Device changed, running a full restart cycle")
                    self._controller.stop()
                    self._release_device()
                    self._handle = self._devices.ensure(config.device)
                    self._controller.start(config.pipeline, self._handle)
            except BridgeError as exc:
                log.error("Reconfigure failed, camera bridge disabled: %s", exc)
                self._abandon()
                raise
            self._config = config

    def _abandon(self) -> None:
        """Undo a half-finished start so nothing is left attached or loaded."""
        self._controller.stop()
        self._enabled = False
        self._release_device()

    def _release_device(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            self._devices.release(handle)
        except DeviceBusy as exc:
            self._warning = str(exc)
            log.warning("Virtual camera not removed: %s", exc)

    def _on_running(self, handle: DeviceHandle) -> None:
        self._bridge_worker.submit(self._publish, handle)

    def _on_inactive(self, handle: DeviceHandle) -> None:
        self._bridge_worker.submit(self._bridge.mark_inactive, handle.index)

    def _publish(self, handle: DeviceHandle) -> None:
        try:
            self._bridge.publish(handle, DeviceDescriptor.for_handle(handle))
            for app_id in self._config.portal_apps:
                self._bridge.grant(app_id, handle.index)
        except BrokerUnavailable as exc:
            log.warning("Session bridge: %s", exc)
            with self._lock:
                self._warning = str(exc)
            return
        with self._lock:
            self._warning = None


def exit_code_for(status: ServiceStatus) -> ExitCode:
    if status.state is PipelineState.FAILED_PERMANENTLY:
        return ExitCode.FAILED_PERMANENTLY
    return ExitCode.SUCCESS


def build_service(config: ServiceConfig) -> CameraBridgeService:
    """Wire the production collaborators for *config*."""
    from core.backends.permission_store import PortalPermissionStore
    from core.backends.pipewire_backend import PipeWireGraph

    devices = VirtualDeviceManager()
    controller = PipelineController(
        devices,
        config.restart,
        grace_period=config.grace_period,
        stall_timeout=config.stall_timeout,
        stop_timeout=config.stop_timeout,
        poll_interval=config.poll_interval,
        plugin_path=config.plugin_path,
    )
    bridge = SessionBridge(
        PipeWireGraph(),
        PortalPermissionStore(),
        attempts=config.broker_attempts,
        delay=config.broker_delay,
    )
    return CameraBridgeService(config, devices, controller, bridge)
