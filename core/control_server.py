"""Control socket – JSON commands over a Unix socket for the CLI and tray."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, UnixConnector, web

from constants import ExitCode
from core.bridge_service import CameraBridgeService, exit_code_for
from core.errors import BridgeError
from utils import xdg

log = logging.getLogger(__name__)

COMMANDS = ("status", "enable", "disable", "set-resolution")

_ROUTES = {
    "status": ("GET", "/status"),
    "enable": ("POST", "/enable"),
    "disable": ("POST", "/disable"),
    "set-resolution": ("POST", "/resolution"),
}


def default_socket_path() -> str:
    return os.path.join(xdg.runtime_dir(), "control.sock")


class ControlServer:
    """Serves :class:`CameraBridgeService` on a Unix socket from a private asyncio loop."""

    def __init__(self, service: CameraBridgeService, socket_path: str | None = None) -> None:
        self._service = service
        self._socket_path = socket_path or default_socket_path()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._runner: Optional[web.AppRunner] = None
        self._ready = threading.Event()
        self._running = False

    # -- public API ----------------------------------------------------------

    @property
    def socket_path(self) -> str:
        return self._socket_path

    @property
    def running(self) -> bool:
        return self._running

    def dispatch(self, command: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run *command* against the service and build the reply body."""
        params = params or {}
        try:
            if command == "status":
                status = self._service.status()
            elif command == "enable":
                status = self._service.enable()
            elif command == "disable":
                status = self._service.disable()
            elif command == "set-resolution":
                try:
                    width, height = int(params["width"]), int(params["height"])
                except (KeyError, TypeError, ValueError):
                    return _reply(ExitCode.INVALID_CONFIG, error="width and height are required")
                status = self._service.set_resolution(width, height)
            else:
                return _reply(ExitCode.INVALID_CONFIG, error=f"Unknown command: {command}")
        except BridgeError as exc:
            log.warning("%s failed: %s", command, exc)
            return _reply(exc.exit_code, self._service.status().to_dict(), str(exc))
        code = exit_code_for(status)
        error = status.last_error if code is ExitCode.FAILED_PERMANENTLY else None
        return _reply(code, status.to_dict(), error)

    def start(self, timeout: float = 5.0) -> bool:
        if self._running:
            return True
        os.makedirs(os.path.dirname(self._socket_path), exist_ok=True)
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)

        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="control-server", daemon=True)
        self._thread.start()
        self._running = self._ready.wait(timeout)
        return self._running

    def stop(self) -> None:
        if self._loop and self._loop.is_running():
            if self._runner:
                fut = asyncio.run_coroutine_threadsafe(self._runner.cleanup(), self._loop)
                try:
                    fut.result(timeout=5)
                except Exception:
                    log.debug("Ignored exception", exc_info=True)
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None
        self._loop = None
        self._running = False
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)

    # -- asyncio server ------------------------------------------------------

    def _run_loop(self) -> None:
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.run_until_complete(self._start_server())
        self._ready.set()
        loop.run_forever()
        loop.close()

    async def _start_server(self) -> None:
        app = web.Application()
        app.router.add_get("/status", self._handle_command)
        app.router.add_post("/enable", self._handle_command)
        app.router.add_post("/disable", self._handle_command)
        app.router.add_post("/resolution", self._handle_command)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.UnixSite(self._runner, self._socket_path)
        await site.start()
        os.chmod(self._socket_path, 0o600)
        log.info("Control socket listening on %s", self._socket_path)

    async def _handle_command(self, request: web.Request) -> web.Response:
        command = next(name for name, (_m, path) in _ROUTES.items() if path == request.path)
        params: dict[str, Any] = {}
        if request.can_read_body:
            try:
                params = await request.json()
            except ValueError:
                return web.json_response(_reply(ExitCode.INVALID_CONFIG, error="Malformed JSON body"))
        # service calls block (modprobe, process teardown); keep the loop free
        body = await asyncio.get_running_loop().run_in_executor(None, self.dispatch, command, params)
        return web.json_response(body)


class ControlClient:
    """Talks to a running :class:`ControlServer`."""

    def __init__(self, socket_path: str | None = None, timeout: float = 30.0) -> None:
        self._socket_path = socket_path or default_socket_path()
        self._timeout = timeout

    def call(self, command: str, **params: Any) -> dict[str, Any]:
        return asyncio.run(self.request(command, **params))

    async def request(self, command: str, **params: Any) -> dict[str, Any]:
        if command not in _ROUTES:
            return _reply(ExitCode.INVALID_CONFIG, error=f"Unknown command: {command}")
        method, path = _ROUTES[command]
        connector = UnixConnector(path=self._socket_path)
        try:
            async with ClientSession(
                connector=connector, timeout=ClientTimeout(total=self._timeout)
            ) as session:
                async with session.request(
                    method, f"http://localhost{path}", json=params or None
                ) as resp:
                    return await resp.json()
        except (ClientError, OSError, asyncio.TimeoutError) as exc:
            log.debug("Control socket %s unreachable: %s", self._socket_path, exc)
            return _reply(
                ExitCode.FACILITY_UNAVAILABLE,
                error=f"Camera bridge service is not running ({self._socket_path})",
            )


def _reply(code: ExitCode, status: dict[str, Any] | None = None, error: str | None = None) -> dict[str, Any]:
    return {"code": int(code), "status": status, "error": error}
