"""Tests for the gst-launch child process wrapper."""

import io
import signal
import subprocess

from core.gst_process import GstPipelineProcess, build_launch_args, launch_env
from core.models import PipelineSpec


class FakePopen:
    """Minimal Popen double: scripted output, optional refusal to exit on SIGINT."""

    def __init__(self, lines=(), ignore_sigint=False):
        self.stdout = io.BytesIO("".join(line + "\n" for line in lines).encode())
        self.pid = 321
        self.returncode = None
        self.ignore_sigint = ignore_sigint
        self.signals = []
        self.killed = False

    def poll(self):
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        if not self.ignore_sigint:
            self.returncode = 0

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired("gst-launch-1.0", timeout)
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9


def _wrap(popen, clock=lambda: 42.0):
    proc = GstPipelineProcess(popen, clock=clock)
    proc._reader.join(timeout=2)
    return proc


class TestLaunchArgs:
    def test_pipeline_shape(self):
        argv = build_launch_args(PipelineSpec(), "/dev/video99")
        assert argv[:5] == ["gst-launch-1.0", "-e", "-v", "icamerasrc", "buffer-count=7"]
        assert "video/x-raw,format=NV12,width=1280,height=720" in argv
        assert "video/x-raw,format=YUY2,width=1280,height=720,framerate=30/1" in argv
        assert argv.index("videoconvert") < argv.index("v4l2sink")
        assert "name=framewatch" in argv
        assert argv[-2:] == ["device=/dev/video99", "sync=false"]

    def test_bool_params(self):
        spec = PipelineSpec(source_params=(("do-timestamp", True),))
        assert "do-timestamp=true" in build_launch_args(spec, "/dev/video1")

    def test_plugin_path_env(self):
        env = launch_env("/opt/gst")
        assert env["GST_PLUGIN_PATH"] == "/opt/gst"


class TestOutput:
    def test_counts_frames(self):
        lines = [
            "Setting pipeline to PLAYING ...",
            "/GstPipeline:pipeline0/GstIdentity:framewatch: last-message = chain   ******* (framewatch:sink)",
            "/GstPipeline:pipeline0/GstIdentity:framewatch: last-message = chain   ******* (framewatch:sink)",
        ]
        proc = _wrap(FakePopen(lines))
        assert proc.frames == 2
        assert proc.last_frame_at == 42.0
        assert proc.take_error() is None

    def test_collects_errors(self):
        lines = [
            "ERROR: from element /GstPipeline:pipeline0/GstICamerasrc:icamerasrc0: Internal data stream error.",
            "WARNING: erroneous pipeline: no element \"icamerasrc\"",
            "WARNING: from element /GstPipeline:pipeline0/GstV4l2Sink:v4l2sink0: late buffers",
        ]
        proc = _wrap(FakePopen(lines))
        assert proc.take_error().startswith("ERROR: from element")
        assert proc.take_error().startswith("WARNING: erroneous pipeline")
        assert proc.take_error() is None
        assert proc.frames == 0


class TestStop:
    def test_graceful(self):
        popen = FakePopen()
        proc = _wrap(popen)
        assert proc.stop(timeout=0.1) is False
        assert popen.signals == [signal.SIGINT]
        assert not popen.killed

    def test_forced_kill(self):
        popen = FakePopen(ignore_sigint=True)
        proc = _wrap(popen)
        assert proc.stop(timeout=0.1) is True
        assert popen.killed

    def test_already_exited(self):
        popen = FakePopen()
        popen.returncode = 1
        proc = _wrap(popen)
        assert proc.stop(timeout=0.1) is False
        assert popen.signals == []


def test_spawn_uses_popen():
    calls = []

    def popen(argv, **kwargs):
        calls.append((argv, kwargs))
        return FakePopen()

    proc = GstPipelineProcess.spawn(["gst-launch-1.0", "fakesrc"], env={"A": "1"}, popen=popen)
    assert proc.pid == 321
    argv, kwargs = calls[0]
    assert argv == ["gst-launch-1.0", "fakesrc"]
    assert kwargs["stderr"] is subprocess.STDOUT
    assert kwargs["env"] == {"A": "1"}
