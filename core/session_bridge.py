"""Session bridge – publishes the loopback node to portal-mediated consumers.

Sandboxed applications (Snap/Flatpak browsers) cannot enumerate
``/dev/video*`` and only see cameras that PipeWire exposes through the
camera portal.  The bridge makes sure the node is visible in the PipeWire
graph and that the configured applications hold a camera permission.

Every broker call is retried a fixed number of times with a fixed delay;
when the attempts run out :class:`BrokerUnavailable` is raised and callers
treat it as a warning.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

from core.errors import BrokerUnavailable
from core.models import PermissionGrant
from core.virtual_camera import DeviceHandle

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DeviceDescriptor:
    index: int
    label: str
    path: str

    @classmethod
    def for_handle(cls, handle: DeviceHandle) -> "DeviceDescriptor":
        return cls(index=handle.index, label=handle.spec.label, path=handle.path)


class MediaGraph(Protocol):
    def find_node(self, descriptor: DeviceDescriptor) -> str | None: ...

    def rescan(self) -> None: ...


class PermissionBroker(Protocol):
    def set_permission(self, app_id: str, allowed: bool) -> None: ...

    def delete_permission(self, app_id: str) -> None: ...


class SessionBridge:
    """Advertises the virtual device and manages per-app camera grants."""

    def __init__(
        self,
        graph: MediaGraph,
        broker: PermissionBroker,
        attempts: int = 3,
        delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._graph = graph
        self._broker = broker
        self._attempts = max(1, attempts)
        self._delay = delay
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: dict[tuple[str, int], PermissionGrant] = {}
        self._published: dict[int, str] = {}

    # -- public API ----------------------------------------------------------

    def publish(self, handle: DeviceHandle, descriptor: DeviceDescriptor | None = None) -> str:
        """Wait for the node to appear in the session graph; return its id."""
        descriptor = descriptor or DeviceDescriptor.for_handle(handle)
        rescanned = False

        def _attempt() -> str:
            nonlocal rescanned
            node = self._graph.find_node(descriptor)
            if node is not None:
                return node
            if not rescanned:
                rescanned = True
                self._graph.rescan()
            raise BrokerUnavailable(f"{descriptor.label!r} is not visible in the session graph yet")

        node_id = self._retry("publish", _attempt)
        with self._lock:
            self._published[descriptor.index] = node_id
        log.info("Published %s as session node %s", descriptor.path, node_id)
        return node_id

    def mark_inactive(self, device_index: int) -> None:
        with self._lock:
            if self._published.pop(device_index, None) is not None:
                log.info("Session endpoint for /dev/video%d marked inactive", device_index)

    def is_published(self, device_index: int) -> bool:
        with self._lock:
            return device_index in self._published

    def grant(self, subject_app: str, device_index: int) -> PermissionGrant:
        self._retry("grant", lambda: self._broker.set_permission(subject_app, True))
        grant = PermissionGrant(subject_app, device_index, self._clock())
        with self._lock:
            self._grants[(subject_app, device_index)] = grant
        log.info("Camera permission granted to %s", subject_app)
        return grant

    def grants(self, device_index: int | None = None) -> list[PermissionGrant]:
        with self._lock:
            return [
                g for g in self._grants.values()
                if device_index is None or g.device_index == device_index
            ]

    def revoke_all(self, device_index: int) -> int:
        """Drop every grant for *device_index*; returns how many were revoked."""
        revoked = 0
        for grant in self.grants(device_index):
            self._retry("revoke", lambda app=grant.subject_app: self._broker.delete_permission(app))
            with self._lock:
                self._grants.pop((grant.subject_app, device_index), None)
            revoked += 1
        self.mark_inactive(device_index)
        return revoked

    # -- retry ---------------------------------------------------------------

    def _retry(self, what: str, operation: Callable[[], T]) -> T:
        last: Exception | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                return operation()
            except BrokerUnavailable as exc:
                last = exc
                log.debug("%s attempt %d/%d failed: %s", what, attempt, self._attempts, exc)
                if attempt < self._attempts:
                    self._sleep(self._delay)
        raise BrokerUnavailable(f"{what} failed after {self._attempts} attempts: {last}")
