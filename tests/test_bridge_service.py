"""End-to-end tests of the bridge service with in-memory collaborators."""

import threading
import time
from dataclasses import replace

import pytest

from constants import ExitCode, PipelineState
from core.bridge_service import exit_code_for
from core.errors import ConfigurationError, DeviceCreateFailed, FacilityUnavailable
from core.models import ServiceStatus, VirtualDeviceSpec


def _run(service, spawner, clock):
    spawner.last.frame(clock.now)
    service._controller.poll()
    service.drain(timeout=5)


class TestEnableDisable:
    def test_enable_publishes_virtual_camera(self, service, spawner, clock, facility, bridge, broker):
        status = service.enable()
        assert status.state is PipelineState.STARTING
        assert status.enabled
        assert status.device == "/dev/video99"
        assert facility.devices[99].label == "Integrated Camera"
        assert facility.devices[99].exclusive

        _run(service, spawner, clock)
        status = service.status()
        assert status.state is PipelineState.RUNNING
        assert status.warning is None
        assert bridge.is_published(99)
        assert broker.permissions == {"snap.firefox": ["yes"]}

    def test_enable_twice_is_noop(self, service, spawner):
        service.enable()
        service.enable()
        assert len(spawner.processes) == 1

    def test_disable(self, service, spawner, clock, facility, bridge):
        service.enable()
        _run(service, spawner, clock)
        status = service.disable()
        service.drain(timeout=5)
        assert status.state is PipelineState.STOPPED
        assert not status.enabled
        assert facility.devices == {}
        assert not bridge.is_published(99)

    def test_disable_twice_is_noop(self, service, facility):
        service.enable()
        service.disable()
        service.disable()
        assert facility.remove_calls == [99]

    def test_disable_with_consumer_attached(self, service, facility):
        service.enable()
        facility.consumer_open = True
        status = service.disable()
        assert status.state is PipelineState.STOPPED
        assert "still open" in status.warning

    def test_facility_missing(self, service, facility):
        facility.available = False
        with pytest.raises(DeviceCreateFailed) as excinfo:
            service.enable()
        assert excinfo.value.exit_code is ExitCode.FACILITY_UNAVAILABLE
        assert not service.status().enabled

    def test_enable_after_permanent_failure(self, service, spawner, clock):
        service.enable()
        for delay in (1.0, 2.0, 0.0):
            spawner.last.crash()
            service._controller.poll()
            clock.advance(delay)
            service._controller.poll()
        status = service.status()
        assert status.state is PipelineState.FAILED_PERMANENTLY
        assert exit_code_for(status) is ExitCode.FAILED_PERMANENTLY

        status = service.enable()
        assert status.state is PipelineState.STARTING
        assert len(spawner.processes) == 4


class TestSessionBridgeOutage:
    def test_broker_down_is_only_a_warning(self, service, spawner, clock, broker):
        broker.down = True
        service.enable()
        _run(service, spawner, clock)
        status = service.status()
        assert status.state is PipelineState.RUNNING
        assert "grant failed after 3 attempts" in status.warning
        assert exit_code_for(status) is ExitCode.SUCCESS

    def test_warning_cleared_on_next_publish(self, service, spawner, clock, graph):
        graph.visible = False
        service.enable()
        _run(service, spawner, clock)
        assert service.status().warning

        graph.visible = True
        spawner.last.crash()
        service._controller.poll()
        clock.advance(1.0)
        service._controller.poll()
        _run(service, spawner, clock)
        assert service.status().warning is None

    def test_shutdown_revokes_grants(self, service, spawner, clock, broker, facility):
        service.enable()
        _run(service, spawner, clock)
        service.disable()
        service.shutdown()
        assert broker.permissions == {}
        assert facility.devices == {}


class TestResolution:
    def test_unsupported_resolution(self, service, spawner):
        service.enable()
        with pytest.raises(ConfigurationError):
            service.set_resolution(800, 600)
        assert service.status().resolution == "1280x720"
        assert len(spawner.processes) == 1

    def test_change_while_running(self, service, spawner, clock, facility):
        seen = []
        service.set_config_listener(seen.append)
        service.enable()
        _run(service, spawner, clock)
        status = service.set_resolution(1920, 1080)
        assert status.resolution == "1920x1080"
        assert status.state is PipelineState.STARTING
        assert "video/x-raw,format=YUY2,width=1920,height=1080,framerate=30/1" in spawner.last.argv
        # same device, no module reload
        assert len(facility.create_calls) == 1
        assert [c.pipeline.output.resolution for c in seen] == [(1920, 1080)]

    def test_change_while_disabled(self, service, spawner):
        status = service.set_resolution(640, 480)
        assert status.resolution == "640x480"
        assert spawner.processes == []

    def test_device_change_cycles_device(self, service, config, facility):
        service.enable()
        new = replace(config, device=VirtualDeviceSpec(index=42, label="Integrated Camera"))
        status = service.reconfigure(new)
        assert status.device == "/dev/video42"
        assert list(facility.devices) == [42]

    def test_last_request_wins(self, service):
        gate = threading.Event()
        entered = threading.Event()
        applied = []
        real_apply = service._apply

        def slow_apply(cfg):
            applied.append(cfg.pipeline.output.resolution)
            if len(applied) == 1:
                entered.set()
                gate.wait(5)
            real_apply(cfg)

        service._apply = slow_apply

        def wait_pending(resolution):
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                pending = service._pending
                if pending is not None and pending.pipeline.output.resolution == resolution:
                    return
                time.sleep(0.005)
            raise AssertionError(f"{resolution} never queued")

        threads = [threading.Thread(target=service.set_resolution, args=(1920, 1080))]
        threads[0].start()
        assert entered.wait(5)
        threads.append(threading.Thread(target=service.set_resolution, args=(640, 480)))
        threads[1].start()
        wait_pending((640, 480))
        threads.append(threading.Thread(target=service.set_resolution, args=(1280, 720)))
        threads[2].start()
        wait_pending((1280, 720))

        gate.set()
        for t in threads:
            t.join(5)
        assert applied == [(1920, 1080), (1280, 720)]
        assert service.config.pipeline.output.resolution == (1280, 720)


def test_exit_codes():
    assert exit_code_for(ServiceStatus(PipelineState.RUNNING)) is ExitCode.SUCCESS
    assert exit_code_for(ServiceStatus(PipelineState.DEGRADED)) is ExitCode.SUCCESS
    assert exit_code_for(ServiceStatus(PipelineState.FAILED_PERMANENTLY)) is ExitCode.FAILED_PERMANENTLY


@pytest.mark.parametrize("resolution", [(640, 480), (1280, 720), (1920, 1080)])
def test_start_stop_releases_device(service, facility, devices, resolution):
    service.set_resolution(*resolution)
    service.enable()
    status = service.disable()
    assert status.state is PipelineState.STOPPED
    assert facility.devices == {}
    assert not devices.is_busy(99)


def test_disable_while_starting_kills_stubborn_pipeline(service, spawner):
    spawner.ignore_sigint = True
    assert service.enable().state is PipelineState.STARTING
    status = service.disable()
    assert status.state is PipelineState.STOPPED
    assert spawner.last.killed


def test_example_scenario(service, config, clock, devices):
    output = config.pipeline.output
    assert (output.pixel_format, output.resolution, output.framerate) == ("YUY2", (1280, 720), 30)

    assert service.enable().state is PipelineState.STARTING
    clock.advance(5)
    service._controller.poll()
    assert service.status().state is PipelineState.RUNNING

    assert service.disable().state is PipelineState.STOPPED
    handle = devices.ensure(config.device)
    assert handle.path == "/dev/video99"


class TestFailedTransitions:
    def test_launch_failure_after_device_created(self, service, spawner, facility):
        spawner.error = FileNotFoundError("gst-launch-1.0")
        with pytest.raises(FacilityUnavailable):
            service.enable()
        status = service.status()
        assert status.state is PipelineState.STOPPED
        assert not status.enabled
        assert facility.create_calls and facility.devices == {}

    def test_disable_after_failed_enable(self, service, spawner, facility):
        spawner.error = FileNotFoundError("gst-launch-1.0")
        with pytest.raises(FacilityUnavailable):
            service.enable()
        service.disable()
        assert facility.devices == {}
        assert facility.remove_calls == [99]

    def test_in_place_reconfigure_failure_can_be_reenabled(self, service, spawner, clock, facility, bridge):
        seen = []
        service.set_config_listener(seen.append)
        service.enable()
        _run(service, spawner, clock)
        spawner.error = OSError("exec format error")
        with pytest.raises(FacilityUnavailable):
            service.set_resolution(640, 480)
        service.drain(timeout=5)
        status = service.status()
        assert status.state is PipelineState.STOPPED
        assert not status.enabled
        assert status.resolution == "1280x720"
        assert facility.devices == {}
        assert not bridge.is_published(99)
        assert seen == []

        spawner.error = None
        status = service.enable()
        assert status.state is PipelineState.STARTING
        assert status.enabled
        assert "video/x-raw,format=YUY2,width=1280,height=720,framerate=30/1" in spawner.last.argv

    def test_device_change_failure_rolls_back(self, service, spawner, clock, config, facility):
        service.enable()
        _run(service, spawner, clock)
        facility.create_error = DeviceCreateFailed("v4l2loopback refused video_nr=42")
        new = replace(config, device=VirtualDeviceSpec(index=42, label="Integrated Camera"))
        with pytest.raises(DeviceCreateFailed):
            service.reconfigure(new)
        status = service.status()
        assert status.state is PipelineState.STOPPED
        assert not status.enabled
        assert status.device == "/dev/video99"
        assert facility.devices == {}

        facility.create_error = None
        assert service.enable().device == "/dev/video99"
        assert list(facility.devices) == [99]


def test_status_reads_controller_under_service_lock(service, controller):
    held = []
    real_snapshot = controller.snapshot

    def try_lock():
        if service._lock.acquire(blocking=False):
            service._lock.release()
            held.append(False)
        else:
            held.append(True)

    def snapshot():
        other = threading.Thread(target=try_lock)
        other.start()
        other.join(5)
        return real_snapshot()

    controller.snapshot = snapshot
    service.status()
    assert held == [True]
