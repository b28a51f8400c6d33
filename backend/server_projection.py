"""Derive the externally visible server record from raw container inspection data.

The projection never raises on missing or malformed fields. Anything it had
to skip is reported back as a warning string next to the partial record.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import HOST_PORT_LABEL, MINECRAFT_PORT, PRIMARY_PORT_LABEL


class ManagedServer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    status: str
    image: Optional[str] = None
    host_port: Optional[int] = Field(default=None, alias="hostPort")

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class Projection:
    server: ManagedServer
    warnings: List[str] = field(default_factory=list)


def _status(state: dict) -> str:
    status = state.get("Status") or "unknown"
    health = (state.get("Health") or {}).get("Status")
    if health:
        return f"{status} ({health})"
    return status


def _live_host_port(ports: dict, primary: str, warnings: List[str]) -> Optional[int]:
    bindings = ports.get(primary)
    if not bindings or not isinstance(bindings, list):
        return None
    raw = (bindings[0] or {}).get("HostPort")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        warnings.append(f"unparseable host port binding {raw!r} for {primary}")
        return None


def project(attrs: dict) -> Projection:
    """Project one ``docker inspect`` document into a ManagedServer."""
    attrs = attrs or {}
    warnings: List[str] = []
    config = attrs.get("Config") or {}
    state = attrs.get("State") or {}
    labels = config.get("Labels") or {}
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}

    primary = labels.get(PRIMARY_PORT_LABEL) or f"{MINECRAFT_PORT}/tcp"
    host_port = _live_host_port(ports, primary, warnings)
    if host_port is None and labels.get(HOST_PORT_LABEL):
        # Live bindings vanish while a container is stopped; the label survives.
        raw = labels[HOST_PORT_LABEL]
        try:
            host_port = int(raw)
        except (TypeError, ValueError):
            warnings.append(f"unparseable {HOST_PORT_LABEL} label {raw!r}")

    server = ManagedServer(
        id=(attrs.get("Id") or "")[:12],
        name=(attrs.get("Name") or "").lstrip("/"),
        status=_status(state),
        image=config.get("Image"),
        host_port=host_port,
    )
    return Projection(server=server, warnings=warnings)
