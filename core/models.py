"""Data models for the camera bridge: device, pipeline and service configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from fractions import Fraction
from typing import Any

from constants import (
    DEFAULT_DEVICE_INDEX,
    DEFAULT_DEVICE_LABEL,
    DEFAULT_PLUGIN_PATH,
    DEFAULT_SOURCE,
    SINK_FORMATS,
    SOURCE_FORMATS,
    SUPPORTED_RESOLUTIONS,
    PipelineState,
)
from core.errors import ConfigurationError


def parse_framerate(value: Any) -> Fraction:
    """Accept ``30``, ``"30"``, ``"30/1"`` or ``"30000/1001"``."""
    try:
        rate = Fraction(str(value).strip())
    except (ValueError, ZeroDivisionError) as exc:
        raise ConfigurationError(f"Invalid frame rate: {value!r}") from exc
    if rate <= 0:
        raise ConfigurationError(f"Frame rate must be positive: {value!r}")
    return rate


def parse_resolution(value: str) -> tuple[int, int]:
    """Parse ``"1280x720"`` into ``(1280, 720)``."""
    try:
        w, h = value.lower().split("x", 1)
        return int(w), int(h)
    except (AttributeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid resolution: {value!r}") from exc


@dataclass(frozen=True)
class VirtualDeviceSpec:
    index: int = DEFAULT_DEVICE_INDEX
    label: str = DEFAULT_DEVICE_LABEL
    exclusive: bool = True

    @property
    def path(self) -> str:
        return f"/dev/video{self.index}"

    def validate(self) -> None:
        if self.index < 0:
            raise ConfigurationError(f"Device index must be non-negative: {self.index}")
        if not self.label.strip():
            raise ConfigurationError("Device label must not be empty")


@dataclass(frozen=True)
class VideoFormat:
    pixel_format: str
    width: int
    height: int
    framerate: Fraction | None = None

    @property
    def resolution(self) -> tuple[int, int]:
        return self.width, self.height

    def caps(self) -> str:
        caps = f"video/x-raw,format={self.pixel_format},width={self.width},height={self.height}"
        if self.framerate is not None:
            caps += f",framerate={self.framerate.numerator}/{self.framerate.denominator}"
        return caps


@dataclass(frozen=True)
class PipelineSpec:
    input: VideoFormat = VideoFormat("NV12", 1280, 720)
    output: VideoFormat = VideoFormat("YUY2", 1280, 720, Fraction(30))
    source: str = DEFAULT_SOURCE
    source_params: tuple[tuple[str, Any], ...] = (("buffer-count", 7),)

    def validate(self) -> None:
        for fmt in (self.input, self.output):
            if fmt.width <= 0 or fmt.height <= 0:
                raise ConfigurationError(f"Invalid size {fmt.width}x{fmt.height}")
        if self.input.pixel_format not in SOURCE_FORMATS:
            raise ConfigurationError(f"Unsupported source format: {self.input.pixel_format}")
        if self.output.pixel_format not in SINK_FORMATS:
            raise ConfigurationError(
                f"Format {self.output.pixel_format} cannot be carried by the virtual device"
            )
        if self.output.framerate is None or self.output.framerate <= 0:
            raise ConfigurationError("Output frame rate must be positive")
        if not self.source:
            raise ConfigurationError("No source element configured")

    def with_resolution(self, width: int, height: int) -> "PipelineSpec":
        return replace(
            self,
            input=replace(self.input, width=width, height=height),
            output=replace(self.output, width=width, height=height),
        )


@dataclass(frozen=True)
class RestartPolicy:
    max_backoff: float = 30.0
    reset_window: float = 60.0
    initial_delay: float = 1.0
    max_failures: int = 5

    def delay(self, failures: int) -> float:
        """Backoff before restart attempt number *failures* (1-based)."""
        if failures < 1:
            return 0.0
        return min(self.initial_delay * (2 ** (failures - 1)), self.max_backoff)


@dataclass(frozen=True)
class PermissionGrant:
    subject_app: str
    device_index: int
    granted_at: float


@dataclass(frozen=True)
class ServiceConfig:
    device: VirtualDeviceSpec = field(default_factory=VirtualDeviceSpec)
    pipeline: PipelineSpec = field(default_factory=PipelineSpec)
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    grace_period: float = 5.0
    stall_timeout: float = 10.0
    stop_timeout: float = 5.0
    poll_interval: float = 0.25
    plugin_path: str = DEFAULT_PLUGIN_PATH
    resolutions: tuple[tuple[int, int], ...] = SUPPORTED_RESOLUTIONS
    portal_apps: tuple[str, ...] = ()
    broker_attempts: int = 3
    broker_delay: float = 1.0
    autostart: bool = True

    def validate(self) -> None:
        self.device.validate()
        self.pipeline.validate()
        self.check_resolution(*self.pipeline.output.resolution)
        if self.restart.max_failures < 1:
            raise ConfigurationError("max-failures must be at least 1")
        if self.stop_timeout <= 0:
            raise ConfigurationError("stop-timeout must be positive")

    def check_resolution(self, width: int, height: int) -> None:
        if (width, height) not in self.resolutions:
            allowed = ", ".join(f"{w}x{h}" for w, h in self.resolutions)
            raise ConfigurationError(
                f"Resolution {width}x{height} is not supported (allowed: {allowed})"
            )

    def with_resolution(self, width: int, height: int) -> "ServiceConfig":
        self.check_resolution(width, height)
        return replace(self, pipeline=self.pipeline.with_resolution(width, height))


@dataclass(frozen=True)
class PipelineStatus:
    state: PipelineState
    last_error: str | None = None
    failures: int = 0
    pid: int | None = None
    frames: int = 0


@dataclass(frozen=True)
class ServiceStatus:
    state: PipelineState
    last_error: str | None = None
    enabled: bool = False
    device: str = ""
    resolution: str = ""
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "enabled": self.enabled,
            "device": self.device,
            "resolution": self.resolution,
            "warning": self.warning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceStatus":
        return cls(
            state=PipelineState(data.get("state", PipelineState.STOPPED.value)),
            last_error=data.get("last_error"),
            enabled=bool(data.get("enabled", False)),
            device=data.get("device", ""),
            resolution=data.get("resolution", ""),
            warning=data.get("warning"),
        )
