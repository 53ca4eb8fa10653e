"""JSON-based settings persistence for Camera Bridge."""

import json
import logging
import os
import tempfile
import threading

from constants import (
    DEFAULT_DEVICE_INDEX,
    DEFAULT_DEVICE_LABEL,
    DEFAULT_PLUGIN_PATH,
    DEFAULT_SOURCE,
    SUPPORTED_RESOLUTIONS,
)
from core.models import (
    PipelineSpec,
    RestartPolicy,
    ServiceConfig,
    VideoFormat,
    VirtualDeviceSpec,
    parse_framerate,
    parse_resolution,
)
from utils import xdg

log = logging.getLogger(__name__)

_DEFAULTS: dict[str, object] = {
    # Virtual device
    "device-index": DEFAULT_DEVICE_INDEX,
    "device-label": DEFAULT_DEVICE_LABEL,
    "device-exclusive": True,
    # Pipeline
    "source-element": DEFAULT_SOURCE,
    "source-params": {"buffer-count": 7},
    "input-format": "NV12",
    "output-format": "YUY2",
    "resolution": "1280x720",
    "framerate": "30/1",
    "plugin-path": DEFAULT_PLUGIN_PATH,
    "resolutions": [f"{w}x{h}" for w, h in SUPPORTED_RESOLUTIONS],
    # Supervision
    "grace-period": 5.0,
    "stall-timeout": 10.0,
    "stop-timeout": 5.0,
    "poll-interval": 0.25,
    "restart-delay": 1.0,
    "max-backoff": 30.0,
    "reset-window": 60.0,
    "max-failures": 5,
    # Session bridge
    "portal-apps": ["snap.firefox"],
    "broker-attempts": 3,
    "broker-delay": 1.0,
    # General
    "autostart": True,
}

_BOOL_TRUE = {"true", "1", "yes"}
_BOOL_FALSE = {"false", "0", "no", ""}


class SettingsManager:
    """Thread-safe JSON settings backed by ~/.config/camera-bridge/settings.json."""

    def __init__(self, path: str | None = None) -> None:
        self._path = path or os.path.join(xdg.config_dir(), "settings.json")
        self._data: dict[str, object] = {}
        self._lock = threading.Lock()
        self._load()

    @property
    def path(self) -> str:
        return self._path

    # -- public API ----------------------------------------------------------

    def get(self, key: str, default: object = None) -> object:
        fallback = default if default is not None else _DEFAULTS.get(key, "")
        value = self._data.get(key, fallback)
        # coerce to the same type as the fallback
        if isinstance(fallback, bool):
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                low = value.lower()
                if low in _BOOL_TRUE:
                    return True
                if low in _BOOL_FALSE:
                    return False
            return bool(value)
        if isinstance(fallback, int):
            try:
                return int(value)
            except (ValueError, TypeError):
                return fallback
        if isinstance(fallback, float):
            try:
                return float(value)
            except (ValueError, TypeError):
                return fallback
        if isinstance(fallback, (list, dict)):
            return value if isinstance(value, type(fallback)) else fallback
        return str(value) if value is not None else ""

    def set(self, key: str, value: object) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def service_config(self) -> ServiceConfig:
        """Build and validate the immutable service configuration."""
        width, height = parse_resolution(self.get("resolution"))
        framerate = parse_framerate(self.get("framerate"))
        pipeline = PipelineSpec(
            input=VideoFormat(self.get("input-format"), width, height),
            output=VideoFormat(self.get("output-format"), width, height, framerate),
            source=self.get("source-element"),
            source_params=tuple(self.get("source-params").items()),
        )
        config = ServiceConfig(
            device=VirtualDeviceSpec(
                index=self.get("device-index"),
                label=self.get("device-label"),
                exclusive=self.get("device-exclusive"),
            ),
            pipeline=pipeline,
            restart=RestartPolicy(
                max_backoff=self.get("max-backoff"),
                reset_window=self.get("reset-window"),
                initial_delay=self.get("restart-delay"),
                max_failures=self.get("max-failures"),
            ),
            grace_period=self.get("grace-period"),
            stall_timeout=self.get("stall-timeout"),
            stop_timeout=self.get("stop-timeout"),
            poll_interval=self.get("poll-interval"),
            plugin_path=self.get("plugin-path"),
            resolutions=tuple(parse_resolution(r) for r in self.get("resolutions")),
            portal_apps=tuple(self.get("portal-apps")),
            broker_attempts=self.get("broker-attempts"),
            broker_delay=self.get("broker-delay"),
            autostart=self.get("autostart"),
        )
        config.validate()
        return config

    def remember(self, config: ServiceConfig) -> None:
        """Persist the parts of *config* that can change at runtime."""
        output = config.pipeline.output
        self.set("resolution", f"{output.width}x{output.height}")

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        if not os.path.isfile(self._path):
            self._data = {}
            return
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                self._data = json.load(fh)
        except Exception:
            log.warning("Failed to load settings from %s", self._path, exc_info=True)
            self._data = {}

    def _save(self) -> None:
        try:
            dir_path = os.path.dirname(self._path)
            fd, tmp = tempfile.mkstemp(dir=dir_path, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(self._data, fh, indent=2, ensure_ascii=False)
                os.replace(tmp, self._path)
            except BaseException:
                os.unlink(tmp)
                raise
        except Exception as exc:
            log.error("Settings save error: %s", exc)
