"""Pipeline controller – supervises the capture pipeline and its restart policy.

The controller owns the only copy of the pipeline state.  A monitor thread
calls :meth:`PipelineController.poll` periodically; each poll inspects the
child process (exit status, reported errors, frame activity) and advances
the state machine::

    Stopped -> Starting -> Running -> Degraded -> Starting -> ...
                                         \\-> FailedPermanently

Failures are counted while they happen back to back; a run of
``reset_window`` seconds in Running clears the counter.  Reaching
``max_failures`` stops automatic restarts until the next explicit start.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from constants import GST_LAUNCH, PipelineState
from core.errors import FacilityUnavailable, PermanentFailure, PipelineCrash, PipelineStalled
from core.gst_process import GstPipelineProcess, build_launch_args, launch_env
from core.models import PipelineSpec, PipelineStatus, RestartPolicy
from core.virtual_camera import DeviceHandle, VirtualDeviceManager

log = logging.getLogger(__name__)

_IDLE_STATES = (PipelineState.STOPPED, PipelineState.FAILED_PERMANENTLY)

DeviceCallback = Callable[[DeviceHandle], None]


class PipelineController:
    """Starts, stops and restarts the gst-launch pipeline feeding the loopback node."""

    OWNER = "capture-pipeline"

    def __init__(
        self,
        devices: VirtualDeviceManager,
        policy: RestartPolicy | None = None,
        *,
        spawn: Callable[[list[str]], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        grace_period: float = 5.0,
        stall_timeout: float = 10.0,
        stop_timeout: float = 5.0,
        poll_interval: float = 0.25,
        plugin_path: str = "",
    ) -> None:
        self._devices = devices
        self._policy = policy or RestartPolicy()
        self._spawn = spawn or self._spawn_gst
        self._clock = clock
        self._grace_period = grace_period
        self._stall_timeout = stall_timeout
        self._stop_timeout = stop_timeout
        self._poll_interval = poll_interval
        self._plugin_path = plugin_path

        self._lock = threading.RLock()
        self._state = PipelineState.STOPPED
        self._last_error: str | None = None
        self._pipeline: PipelineSpec | None = None
        self._sink: DeviceHandle | None = None
        self._process: Any = None
        self._doomed: list[Any] = []
        self._failures = 0
        self._launched_at = 0.0
        self._running_since = 0.0
        self._restart_at: float | None = None

        self._events: list[tuple[DeviceCallback, DeviceHandle]] = []
        self._on_running: DeviceCallback | None = None
        self._on_inactive: DeviceCallback | None = None

        self._monitor: threading.Thread | None = None
        self._monitor_halt: threading.Event | None = None

    # -- public API ----------------------------------------------------------

    def set_callbacks(
        self,
        on_running: DeviceCallback | None = None,
        on_inactive: DeviceCallback | None = None,
    ) -> None:
        self._on_running = on_running
        self._on_inactive = on_inactive

    @property
    def pipeline(self) -> PipelineSpec | None:
        return self._pipeline

    def start(self, pipeline: PipelineSpec, sink: DeviceHandle) -> None:
        """Launch *pipeline* into *sink*. An active pipeline is replaced atomically."""
        pipeline.validate()
        try:
            with self._lock:
                if self._state not in _IDLE_STATES:
                    self._halt()
                    # the old process must release the node before the new one opens it
                    self._reap()
                self._devices.attach(sink, self.OWNER)
                self._pipeline = pipeline
                self._sink = sink
                self._failures = 0
                self._last_error = None
                try:
                    self._launch()
                except FacilityUnavailable as exc:
                    self._devices.detach(sink)
                    self._state = PipelineState.STOPPED
                    self._last_error = str(exc)
                    raise
                self._replace_monitor()
        finally:
            self._reap()
            self._flush_events()

    reconfigure = start

    def stop(self) -> None:
        with self._lock:
            if self._state is PipelineState.STOPPED and self._process is None:
                return
            self._halt()
            self._failures = 0
        self._reap()
        self._stop_monitor()
        self._flush_events()

    def health_check(self) -> PipelineState:
        with self._lock:
            return self._state

    def snapshot(self) -> PipelineStatus:
        with self._lock:
            proc = self._process
            return PipelineStatus(
                state=self._state,
                last_error=self._last_error,
                failures=self._failures,
                pid=getattr(proc, "pid", None) if proc else None,
                frames=getattr(proc, "frames", 0) if proc else 0,
            )

    def poll(self) -> PipelineState:
        """Run one supervision step and return the resulting state."""
        with self._lock:
            self._step(self._clock())
            state = self._state
        self._reap()
        self._flush_events()
        return state

    # -- state machine -------------------------------------------------------

    def _step(self, now: float) -> None:
        if self._state in _IDLE_STATES:
            return

        if self._process is None:
            if (
                self._state is PipelineState.DEGRADED
                and self._restart_at is not None
                and now >= self._restart_at
            ):
                log.info("Restarting pipeline (failure %d/%d)", self._failures, self._policy.max_failures)
                try:
                    self._launch()
                except FacilityUnavailable as exc:
                    self._give_up(PermanentFailure(f"Pipeline could not be restarted: {exc}"))
            return

        proc = self._process
        code = proc.poll()
        if code is not None:
            error = proc.take_error()
            msg = f"Pipeline exited with status {code}"
            if error:
                msg += f": {error}"
            self._fail(PipelineCrash(msg), now)
            return

        error = proc.take_error()
        if error:
            self._fail(PipelineCrash(error), now)
            return

        frame_at = proc.last_frame_at
        if self._state is PipelineState.STARTING:
            if frame_at is not None or now - self._launched_at >= self._grace_period:
                self._enter_running(now)
            return

        if self._state is PipelineState.RUNNING:
            activity = max(frame_at or self._running_since, self._running_since)
            if self._stall_timeout > 0 and now - activity >= self._stall_timeout:
                self._fail(PipelineStalled(f"No frames for {now - activity:.1f}s"), now)
                return
            if self._failures and now - self._running_since >= self._policy.reset_window:
                log.info("Pipeline stable, clearing %d failure(s)", self._failures)
                self._failures = 0

    def _launch(self) -> None:
        argv = build_launch_args(self._pipeline, self._sink.path)
        try:
            self._process = self._spawn(argv)
        except OSError as exc:
            raise FacilityUnavailable(f"Cannot run {GST_LAUNCH}: {exc}") from exc
        self._state = PipelineState.STARTING
        self._launched_at = self._clock()
        self._restart_at = None

    def _enter_running(self, now: float) -> None:
        self._state = PipelineState.RUNNING
        self._running_since = now
        log.info("Pipeline running on %s", self._sink.path)
        if self._on_running:
            self._events.append((self._on_running, self._sink))

    def _leave_running(self) -> None:
        if self._state is PipelineState.RUNNING and self._on_inactive:
            self._events.append((self._on_inactive, self._sink))

    def _fail(self, exc: PipelineCrash, now: float) -> None:
        log.warning("%s: %s", type(exc).__name__, exc)
        self._leave_running()
        self._last_error = str(exc)
        self._terminate()
        self._failures += 1
        if self._failures >= self._policy.max_failures:
            self._give_up(
                PermanentFailure(
                    f"Pipeline failed permanently after {self._failures} consecutive failures: {exc}"
                )
            )
            return
        delay = self._policy.delay(self._failures)
        self._restart_at = now + delay
        self._state = PipelineState.DEGRADED
        log.info("Pipeline restart scheduled in %.1fs", delay)

    def _give_up(self, failure: PermanentFailure) -> None:
        log.error("%s", failure)
        self._terminate()
        self._state = PipelineState.FAILED_PERMANENTLY
        self._last_error = str(failure)
        self._restart_at = None
        if self._sink:
            self._devices.detach(self._sink)

    def _halt(self) -> None:
        self._leave_running()
        self._terminate()
        if self._sink:
            self._devices.detach(self._sink)
        self._state = PipelineState.STOPPED
        self._restart_at = None

    def _terminate(self) -> None:
        """Detach the child; :meth:`_reap` stops it once the lock is released."""
        proc, self._process = self._process, None
        if proc is not None:
            self._doomed.append(proc)

    def _reap(self) -> None:
        with self._lock:
            doomed, self._doomed = self._doomed, []
        for proc in doomed:
            if proc.stop(self._stop_timeout):
                log.warning("Pipeline (pid %s) had to be killed", getattr(proc, "pid", "?"))

    def _spawn_gst(self, argv: list[str]) -> GstPipelineProcess:
        return GstPipelineProcess.spawn(argv, env=launch_env(self._plugin_path), clock=self._clock)

    # -- monitor thread ------------------------------------------------------

    def _replace_monitor(self) -> None:
        if self._monitor_halt is not None:
            self._monitor_halt.set()
        if self._poll_interval <= 0:
            return
        halt = threading.Event()
        self._monitor_halt = halt
        self._monitor = threading.Thread(
            target=self._monitor_loop, args=(halt,), name="pipeline-monitor", daemon=True
        )
        self._monitor.start()

    def _stop_monitor(self) -> None:
        halt, thread = self._monitor_halt, self._monitor
        if halt is not None:
            halt.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._stop_timeout * 2 + self._poll_interval)

    def _monitor_loop(self, halt: threading.Event) -> None:
        while not halt.wait(self._poll_interval):
            try:
                state = self.poll()
            except Exception:
                log.exception("Pipeline monitor step failed")
                continue
            if state in _IDLE_STATES:
                break

    def _flush_events(self) -> None:
        with self._lock:
            events, self._events = self._events, []
        for callback, handle in events:
            try:
                callback(handle)
            except Exception:
                log.exception("Pipeline listener failed")
