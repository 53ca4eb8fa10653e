"""PipeWire backend – finds the loopback node in the session graph."""

from __future__ import annotations

import logging
import re
import subprocess

from core.errors import BrokerUnavailable
from core.session_bridge import DeviceDescriptor

log = logging.getLogger(__name__)


class PipeWireGraph:
    """Query ``pw-cli`` for video source nodes; restart WirePlumber to rescan."""

    def find_node(self, descriptor: DeviceDescriptor) -> str | None:
        try:
            result = subprocess.run(
                ["pw-cli", "list-objects"],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise BrokerUnavailable(f"pw-cli unavailable: {exc}") from exc
        if result.returncode != 0:
            raise BrokerUnavailable(f"pw-cli failed: {result.stderr.strip()}")

        for node_id, props in parse_pw_objects(result.stdout):
            if not _is_video_source(props):
                continue
            if props.get("api.v4l2.path") == descriptor.path:
                return node_id
            names = (props.get("node.description", ""), props.get("node.nick", ""))
            if descriptor.label in names:
                return node_id
        return None

    def rescan(self) -> None:
        """WirePlumber only enumerates v4l2 nodes at startup; restart it."""
        try:
            subprocess.run(
                ["systemctl", "--user", "restart", "wireplumber"],
                capture_output=True,
                check=True,
                timeout=15,
            )
            log.info("Restarted WirePlumber to pick up the virtual camera")
        except (OSError, subprocess.SubprocessError) as exc:
            raise BrokerUnavailable(f"Could not restart WirePlumber: {exc}") from exc


def parse_pw_objects(output: str) -> list[tuple[str, dict[str, str]]]:
    """Split ``pw-cli list-objects`` output into ``(id, properties)`` for nodes."""
    nodes: list[tuple[str, dict[str, str]]] = []
    current_id = ""
    current_props: dict[str, str] = {}

    for line in output.splitlines():
        # New object: "id 42, type PipeWire:Interface:Node/3"
        obj_match = re.match(r"\s*id\s+(\d+),\s+type\s+(\S+)", line)
        if obj_match:
            if current_id:
                nodes.append((current_id, current_props))
            is_node = obj_match.group(2).startswith("PipeWire:Interface:Node")
            current_id = obj_match.group(1) if is_node else ""
            current_props = {}
            continue

        # Property: "    media.class = \"Video/Source\""
        prop_match = re.match(r'\s+([\w.]+)\s*=\s*"?([^"]*)"?', line)
        if prop_match and current_id:
            current_props[prop_match.group(1)] = prop_match.group(2).strip()

    if current_id:
        nodes.append((current_id, current_props))
    return nodes


def _is_video_source(props: dict[str, str]) -> bool:
    return props.get("media.class", "") in ("Video/Source", "Video/Source/Virtual")
