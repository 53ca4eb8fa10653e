"""Error taxonomy shared by every bridge component."""

from __future__ import annotations

from constants import ExitCode


class BridgeError(Exception):
    """Base class; ``exit_code`` is what the control surface reports."""

    exit_code: ExitCode = ExitCode.INVALID_CONFIG


class ConfigurationError(BridgeError):
    """Bad resolution, format or device index. Rejected before start, never retried."""

    exit_code = ExitCode.INVALID_CONFIG


class FacilityUnavailable(BridgeError):
    """A system capability (module, launcher binary) is missing."""

    exit_code = ExitCode.FACILITY_UNAVAILABLE


class DeviceCreateFailed(FacilityUnavailable):
    pass


class DeviceBusy(BridgeError):
    """The loopback node is held by a producer or consumer."""


class PipelineCrash(BridgeError):
    pass


class PipelineStalled(PipelineCrash):
    pass


class BrokerUnavailable(BridgeError):
    """Session bus broker unreachable; reported as a warning only."""


class PermanentFailure(BridgeError):
    exit_code = ExitCode.FAILED_PERMANENTLY
