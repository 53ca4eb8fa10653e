"""Virtual camera – v4l2loopback endpoint lifecycle for the bridge."""

from __future__ import annotations

import glob
import logging
import os
import subprocess
import threading
from dataclasses import dataclass

from core.errors import ConfigurationError, DeviceBusy, DeviceCreateFailed
from core.models import VirtualDeviceSpec

log = logging.getLogger(__name__)

_SYS_V4L = "/sys/class/video4linux"
_SYS_PARAMS = "/sys/module/v4l2loopback/parameters"


@dataclass(frozen=True)
class DeviceHandle:
    spec: VirtualDeviceSpec

    @property
    def index(self) -> int:
        return self.spec.index

    @property
    def path(self) -> str:
        return self.spec.path


class V4l2LoopbackModule:
    """Thin wrapper over the v4l2loopback kernel module and its sysfs view."""

    def __init__(self, sys_v4l: str = _SYS_V4L, sys_params: str = _SYS_PARAMS) -> None:
        self._sys_v4l = sys_v4l
        self._sys_params = sys_params

    def is_available(self) -> bool:
        try:
            result = subprocess.run(
                ["modinfo", "v4l2loopback"],
                capture_output=True,
                timeout=5,
            )
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def is_loaded(self) -> bool:
        return os.path.isdir(self._sys_params)

    def list_devices(self) -> dict[int, VirtualDeviceSpec]:
        """Return loopback nodes currently present, keyed by index."""
        if not self.is_loaded():
            return {}
        numbers = _split_param(self._read(os.path.join(self._sys_params, "video_nr")))
        exclusive = _split_param(self._read(os.path.join(self._sys_params, "exclusive_caps")))
        devices: dict[int, VirtualDeviceSpec] = {}
        for node in sorted(glob.glob(os.path.join(self._sys_v4l, "video*"))):
            if not self._is_virtual(node):
                continue
            try:
                index = int(os.path.basename(node)[len("video"):])
            except ValueError:
                continue
            label = self._read(os.path.join(node, "name")).strip()
            excl = False
            if str(index) in numbers:
                pos = numbers.index(str(index))
                excl = pos < len(exclusive) and exclusive[pos] in ("Y", "1")
            devices[index] = VirtualDeviceSpec(index=index, label=label, exclusive=excl)
        return devices

    def is_physical(self, index: int) -> bool:
        node = os.path.join(self._sys_v4l, f"video{index}")
        return os.path.exists(node) and not self._is_virtual(node)

    def create(self, spec: VirtualDeviceSpec) -> None:
        if self.is_loaded():
            # modprobe is a no-op on a loaded module; reload to get our node
            self.remove(spec.index)
        safe_label = spec.label.replace('"', "").replace("\\", "")
        try:
            _run_privileged(
                [
                    "modprobe",
                    "v4l2loopback",
                    "devices=1",
                    f"video_nr={spec.index}",
                    f'card_label="{safe_label}"',
                    f"exclusive_caps={1 if spec.exclusive else 0}",
                ]
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise DeviceCreateFailed(f"Could not load v4l2loopback: {exc}") from exc

    def remove(self, index: int) -> None:
        if not self.is_loaded():
            return
        try:
            _run_privileged(["modprobe", "-r", "v4l2loopback"])
        except subprocess.CalledProcessError as exc:
            output = (exc.stderr or b"").decode(errors="ignore")
            if "in use" in output.lower():
                raise DeviceBusy(f"/dev/video{index} is still open by another application") from exc
            raise DeviceCreateFailed(f"Could not unload v4l2loopback: {output.strip()}") from exc
        except (OSError, subprocess.SubprocessError) as exc:
            raise DeviceCreateFailed(f"Could not unload v4l2loopback: {exc}") from exc

    @staticmethod
    def _is_virtual(node: str) -> bool:
        return os.path.realpath(node).startswith("/sys/devices/virtual/")

    @staticmethod
    def _read(path: str) -> str:
        try:
            with open(path) as f:
                return f.read()
        except OSError:
            return ""


class VirtualDeviceManager:
    """Ensures the loopback endpoint exists with the configured identity.

    Also arbitrates producers: only one owner may hold a handle at a time.
    """

    def __init__(self, facility: V4l2LoopbackModule | None = None) -> None:
        self._facility = facility or V4l2LoopbackModule()
        self._lock = threading.Lock()
        self._handles: dict[int, DeviceHandle] = {}
        self._owners: dict[int, str] = {}

    # -- public API ----------------------------------------------------------

    def ensure(self, spec: VirtualDeviceSpec) -> DeviceHandle:
        spec.validate()
        with self._lock:
            current = self._facility.list_devices().get(spec.index)
            if current is None and self._facility.is_physical(spec.index):
                raise ConfigurationError(
                    f"{spec.path} belongs to a physical capture device"
                )
            if current == spec:
                handle = self._handles.get(spec.index)
                if handle is None or handle.spec != spec:
                    handle = DeviceHandle(spec)
                    self._handles[spec.index] = handle
                return handle

            if current is not None:
                if spec.index in self._owners:
                    raise DeviceBusy(
                        f"{spec.path} must be recreated but is held by {self._owners[spec.index]}"
                    )
                log.info(
                    "Recreating %s (label=%r exclusive=%s -> label=%r exclusive=%s)",
                    spec.path, current.label, current.exclusive, spec.label, spec.exclusive,
                )
                self._facility.remove(spec.index)
                self._handles.pop(spec.index, None)

            if not self._facility.is_available():
                raise DeviceCreateFailed("The v4l2loopback kernel module is not installed")
            self._facility.create(spec)
            if spec.index not in self._facility.list_devices():
                raise DeviceCreateFailed(f"{spec.path} did not appear after loading v4l2loopback")

            log.info("Virtual camera %r ready on %s", spec.label, spec.path)
            handle = DeviceHandle(spec)
            self._handles[spec.index] = handle
            return handle

    def release(self, handle: DeviceHandle) -> None:
        with self._lock:
            owner = self._owners.get(handle.index)
            if owner is not None:
                raise DeviceBusy(f"{handle.path} is held by {owner}")
            self._facility.remove(handle.index)
            self._handles.pop(handle.index, None)
            log.info("Virtual camera %s released", handle.path)

    def attach(self, handle: DeviceHandle, owner: str) -> None:
        with self._lock:
            current = self._owners.get(handle.index)
            if current is not None and current != owner:
                raise DeviceBusy(f"{handle.path} is already held by {current}")
            self._owners[handle.index] = owner

    def detach(self, handle: DeviceHandle) -> None:
        with self._lock:
            self._owners.pop(handle.index, None)

    def is_busy(self, index: int) -> bool:
        with self._lock:
            return index in self._owners


def _split_param(value: str) -> list[str]:
    return [part.strip() for part in value.strip().split(",") if part.strip()]


def _run_privileged(cmd: list[str]) -> subprocess.CompletedProcess:
    if os.geteuid() != 0:
        cmd = ["pkexec", *cmd]
    log.debug("Running %s", " ".join(cmd))
    return subprocess.run(cmd, capture_output=True, check=True, timeout=30)
