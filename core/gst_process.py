"""gst-launch child process – runs the bridge pipeline and watches its output."""

from __future__ import annotations

import collections
import logging
import os
import re
import signal
import subprocess
import threading
import time
from typing import Callable

from constants import FRAME_WATCH_NAME, GST_LAUNCH
from core.models import PipelineSpec

log = logging.getLogger(__name__)

# "/GstPipeline:pipeline0/GstIdentity:framewatch: last-message = chain ..."
_FRAME_RE = re.compile(rf":{FRAME_WATCH_NAME}: last-message = ")
_ERROR_RE = re.compile(r"^(ERROR|WARNING: erroneous pipeline)[:\s]")


def build_launch_args(pipeline: PipelineSpec, device_path: str) -> list[str]:
    """Return the gst-launch argv feeding *pipeline* into *device_path*."""
    params = [f"{key}={_gst_value(value)}" for key, value in pipeline.source_params]
    return [
        GST_LAUNCH,
        "-e",
        "-v",
        pipeline.source,
        *params,
        "!",
        pipeline.input.caps(),
        "!",
        "videoconvert",
        "!",
        pipeline.output.caps(),
        "!",
        "identity",
        f"name={FRAME_WATCH_NAME}",
        "silent=false",
        "drop-allocation=true",
        "!",
        "v4l2sink",
        f"device={device_path}",
        "sync=false",
    ]


def launch_env(plugin_path: str = "") -> dict[str, str]:
    env = dict(os.environ)
    if plugin_path:
        env["GST_PLUGIN_PATH"] = plugin_path
    return env


class GstPipelineProcess:
    """A running gst-launch pipeline with an output reader thread."""

    def __init__(self, process: subprocess.Popen, clock: Callable[[], float] = time.monotonic) -> None:
        self._process = process
        self._clock = clock
        self._lock = threading.Lock()
        self._errors: collections.deque[str] = collections.deque(maxlen=16)
        self.frames = 0
        self.last_frame_at: float | None = None
        self._reader = threading.Thread(target=self._reader_loop, name="gst-output", daemon=True)
        self._reader.start()

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        env: dict[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> "GstPipelineProcess":
        log.info("Launching: %s", " ".join(argv))
        process = popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=env,
        )
        return cls(process, clock=clock)

    # -- public API ----------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return getattr(self._process, "pid", None)

    def poll(self) -> int | None:
        return self._process.poll()

    def take_error(self) -> str | None:
        with self._lock:
            return self._errors.popleft() if self._errors else None

    def stop(self, timeout: float = 5.0) -> bool:
        """Ask for EOS, then kill after *timeout*. Returns True if killed."""
        forced = False
        if self._process.poll() is None:
            try:
                self._process.send_signal(signal.SIGINT)
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log.warning("Pipeline did not stop within %.1fs, killing it", timeout)
                self._process.kill()
                forced = True
                try:
                    self._process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    log.error("Pipeline process %s did not die after SIGKILL", self.pid)
        self._reader.join(timeout=timeout)
        return forced

    # -- output handling -----------------------------------------------------

    def _reader_loop(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        for raw in iter(stream.readline, b""):
            text = raw.decode(errors="ignore").strip() if isinstance(raw, bytes) else raw.strip()
            if text:
                self._handle_line(text)

    def _handle_line(self, text: str) -> None:
        if _FRAME_RE.search(text):
            with self._lock:
                self.frames += 1
                self.last_frame_at = self._clock()
            return
        if _ERROR_RE.match(text):
            log.error("GStreamer: %s", text)
            with self._lock:
                self._errors.append(text)
        elif text.startswith("WARNING"):
            log.warning("GStreamer: %s", text)
        else:
            log.debug("GStreamer: %s", text)


def _gst_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
