"""XDG Base Directory paths for Camera Bridge."""

import os

_APP = "camera-bridge"


def _ensure(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def config_dir() -> str:
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return _ensure(os.path.join(base, _APP))


def state_dir() -> str:
    base = os.environ.get("XDG_STATE_HOME", os.path.expanduser("~/.local/state"))
    return _ensure(os.path.join(base, _APP))


def runtime_dir() -> str:
    base = os.environ.get("XDG_RUNTIME_DIR") or f"/run/user/{os.getuid()}"
    if not os.path.isdir(base):
        base = os.path.join("/tmp", f"{_APP}-{os.getuid()}")
    return _ensure(os.path.join(base, _APP))
