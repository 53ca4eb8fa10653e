"""Shared pytest fixtures and fakes for the camera bridge test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.bridge_service import CameraBridgeService  # noqa: E402
from core.errors import BrokerUnavailable, DeviceBusy  # noqa: E402
from core.models import RestartPolicy, ServiceConfig, VirtualDeviceSpec  # noqa: E402
from core.pipeline_controller import PipelineController  # noqa: E402
from core.session_bridge import SessionBridge  # noqa: E402
from core.virtual_camera import VirtualDeviceManager  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcess:
    """Stands in for GstPipelineProcess."""

    _next_pid = 4000

    def __init__(self, argv, ignore_sigint=False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = argv
        self.ignore_sigint = ignore_sigint
        self.returncode = None
        self.frames = 0
        self.last_frame_at = None
        self.errors = []
        self.stop_calls = []
        self.killed = False

    def poll(self):
        return self.returncode

    def take_error(self):
        return self.errors.pop(0) if self.errors else None

    def stop(self, timeout=5.0):
        self.stop_calls.append(timeout)
        self.killed = self.ignore_sigint
        self.returncode = -9 if self.ignore_sigint else 0
        return self.ignore_sigint

    # helpers for tests
    def frame(self, at):
        self.frames += 1
        self.last_frame_at = at

    def crash(self, code=1):
        self.returncode = code


class Spawner:
    def __init__(self):
        self.processes = []
        self.ignore_sigint = False
        self.error = None

    def __call__(self, argv):
        if self.error is not None:
            raise self.error
        proc = FakeProcess(argv, ignore_sigint=self.ignore_sigint)
        self.processes.append(proc)
        return proc

    @property
    def last(self):
        return self.processes[-1]


class FakeFacility:
    """In-memory v4l2loopback module."""

    def __init__(self):
        self.available = True
        self.devices = {}
        self.physical = set()
        self.create_calls = []
        self.remove_calls = []
        self.consumer_open = False
        self.create_error = None

    def is_available(self):
        return self.available

    def list_devices(self):
        return dict(self.devices)

    def is_physical(self, index):
        return index in self.physical

    def create(self, spec):
        self.create_calls.append(spec)
        if self.create_error is not None:
            raise self.create_error
        self.devices[spec.index] = spec

    def remove(self, index):
        self.remove_calls.append(index)
        if self.consumer_open:
            raise DeviceBusy(f"/dev/video{index} is still open by another application")
        self.devices.pop(index, None)


class FakeGraph:
    def __init__(self):
        self.visible = True
        self.down = False
        self.lookups = 0
        self.rescans = 0

    def find_node(self, descriptor):
        self.lookups += 1
        if self.down:
            raise BrokerUnavailable("pw-cli unavailable")
        return "57" if self.visible else None

    def rescan(self):
        self.rescans += 1


class FakeBroker:
    def __init__(self):
        self.down = False
        self.failures_left = 0
        self.permissions = {}
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise BrokerUnavailable("session bus unavailable")
        if self.failures_left:
            self.failures_left -= 1
            raise BrokerUnavailable("broker restarting")

    def set_permission(self, app_id, allowed):
        self._check()
        self.permissions[app_id] = ["yes" if allowed else "no"]

    def delete_permission(self, app_id):
        self._check()
        self.permissions.pop(app_id, None)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def facility():
    return FakeFacility()


@pytest.fixture
def devices(facility):
    return VirtualDeviceManager(facility)


@pytest.fixture
def spawner():
    return Spawner()


@pytest.fixture
def policy():
    return RestartPolicy(max_backoff=8.0, reset_window=60.0, initial_delay=1.0, max_failures=3)


@pytest.fixture
def controller(devices, policy, spawner, clock):
    return PipelineController(
        devices,
        policy,
        spawn=spawner,
        clock=clock,
        grace_period=5.0,
        stall_timeout=10.0,
        stop_timeout=2.0,
        poll_interval=0,
    )


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def bridge(graph, broker):
    return SessionBridge(graph, broker, attempts=3, delay=0.5, sleep=lambda _s: None)


@pytest.fixture
def config(policy):
    return ServiceConfig(
        device=VirtualDeviceSpec(index=99, label="Integrated Camera", exclusive=True),
        restart=policy,
        portal_apps=("snap.firefox",),
    )


@pytest.fixture
def service(config, devices, controller, bridge):
    svc = CameraBridgeService(config, devices, controller, bridge)
    yield svc
    svc.shutdown()
