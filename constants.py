"""Global constants for Camera Bridge."""

import enum

APP_ID = "org.camerabridge.CameraBridge"
APP_NAME = "Camera Bridge"
APP_VERSION = "1.0.0"
APP_ICON = "camera-web"

GST_LAUNCH = "gst-launch-1.0"
FRAME_WATCH_NAME = "framewatch"

DEFAULT_DEVICE_INDEX = 99
DEFAULT_DEVICE_LABEL = "Integrated Camera"
DEFAULT_SOURCE = "icamerasrc"
DEFAULT_PLUGIN_PATH = "/usr/lib/gstreamer-1.0"

# Resolutions the IPU6 camera HAL is known to deliver
SUPPORTED_RESOLUTIONS: tuple[tuple[int, int], ...] = (
    (640, 480),
    (1280, 720),
    (1920, 1080),
)

# Raw formats videoconvert accepts from the source side
SOURCE_FORMATS = frozenset(
    {"NV12", "NV21", "I420", "YV12", "YUY2", "UYVY", "RGB", "BGR", "RGBx", "BGRx"}
)

# Formats v4l2loopback can expose to consumers
SINK_FORMATS = frozenset({"YUY2", "UYVY", "NV12", "I420", "YV12", "RGB", "BGR", "BGRx", "GRAY8"})


class PipelineState(enum.Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    FAILED_PERMANENTLY = "FailedPermanently"


class ExitCode(enum.IntEnum):
    SUCCESS = 0
    INVALID_CONFIG = 1
    FACILITY_UNAVAILABLE = 2
    FAILED_PERMANENTLY = 3
