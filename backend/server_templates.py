"""
Server Templates - named presets bundling an image, the container ports to
expose and the default environment for one game-server family.

Templates are defined at import time and never mutated afterwards.
"""

from types import MappingProxyType
from typing import Dict, List, Optional, Sequence


def normalize_port_spec(spec) -> str:
    """Return a container port as ``"<port>/<proto>"`` (protocol defaults to tcp)."""
    raw = str(spec).strip().lower()
    port, _, proto = raw.partition("/")
    return f"{int(port)}/{proto or 'tcp'}"


class ServerTemplate:
    __slots__ = ("id", "name", "image", "ports", "env")

    def __init__(self, id: str, name: str, image: str, ports: Sequence = (), env: Optional[Dict[str, str]] = None):
        object.__setattr__(self, "id", id)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "image", image)
        object.__setattr__(self, "ports", tuple(normalize_port_spec(p) for p in ports))
        object.__setattr__(self, "env", MappingProxyType(dict(env or {})))

    def __setattr__(self, key, value):
        raise AttributeError("ServerTemplate is immutable")

    def __repr__(self):
        return f"ServerTemplate(id={self.id!r}, image={self.image!r}, ports={list(self.ports)!r})"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "ports": list(self.ports),
            "env": dict(self.env),
        }


DEFAULT_TEMPLATES = (
    ServerTemplate(
        id="minecraft",
        name="Minecraft (Java)",
        image="itzg/minecraft-server",
        ports=["25565/tcp"],
        env={"EULA": "TRUE", "MEMORY": "1G"},
    ),
    ServerTemplate(
        id="valheim",
        name="Valheim",
        image="lloesche/valheim-server",
        ports=["2456/udp", "2457/udp"],
        env={"SERVER_NAME": "Valheim", "SERVER_PUBLIC": "false"},
    ),
    ServerTemplate(
        id="terraria",
        name="Terraria",
        image="ryshe/terraria",
        ports=["7777/tcp"],
        env={"WORLD_FILENAME": "world.wld"},
    ),
    ServerTemplate(
        id="factorio",
        name="Factorio",
        image="factoriotools/factorio",
        ports=["34197/udp", "27015/tcp"],
        env={},
    ),
)


class ServerTemplateManager:
    def __init__(self, templates: Sequence[ServerTemplate] = DEFAULT_TEMPLATES):
        self._templates: Dict[str, ServerTemplate] = {}
        for template in templates:
            self._templates[template.id] = template

    def get(self, template_id: Optional[str]) -> Optional[ServerTemplate]:
        """Get a template by ID; None when unknown."""
        if not template_id:
            return None
        return self._templates.get(template_id)

    def list(self) -> List[ServerTemplate]:
        """All templates in declaration order."""
        return list(self._templates.values())


_template_manager = None

def get_template_manager() -> ServerTemplateManager:
    global _template_manager
    if _template_manager is None:
        _template_manager = ServerTemplateManager()
    return _template_manager
