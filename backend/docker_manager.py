import logging
import os
import re
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Dict, List, Optional, Tuple

import docker

from config import (
    CONSOLE_SHELL,
    HOST_PORT_LABEL,
    LOG_TAIL_LINES,
    MANAGEMENT_LABEL,
    MANAGEMENT_LABEL_VALUE,
    MINECRAFT_PORT,
    PRIMARY_PORT_LABEL,
    SERVER_DATA_PATH,
    SERVERS_HOST_ROOT,
    TEMPLATE_LABEL,
)
from errors import InvalidInput, InvalidName, MissingImage, NotFound, PartialFailure, RuntimeFailure
from port_allocator import PortAllocator, validate_port
from server_projection import ManagedServer, project
from server_templates import ServerTemplate, ServerTemplateManager, get_template_manager

logger = logging.getLogger(__name__)

MINECRAFT_TEMPLATE_ID = "minecraft"
MINECRAFT_PORT_KEY = f"{MINECRAFT_PORT}/tcp"
# Applied underneath template and request env for Minecraft-shaped servers.
BASE_MINECRAFT_ENV = {"EULA": "TRUE", "MEMORY": "1G"}

_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def validate_name(name) -> str:
    """Names double as the host data directory, so only Docker's name grammar is accepted."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidName("name is required")
    name = name.strip()
    if not _NAME_PATTERN.match(name):
        raise InvalidName(f"Invalid server name {name!r}: use letters, digits, '_', '.' or '-'")
    return name


def is_minecraft(image: str, template: Optional[ServerTemplate] = None) -> bool:
    if template is not None and template.id == MINECRAFT_TEMPLATE_ID:
        return True
    return "minecraft" in (image or "").lower()


def _env_list_to_dict(env_list) -> Dict[str, str]:
    env_map = {}
    for e in env_list or []:
        if "=" in e:
            k, v = e.split("=", 1)
            env_map[k] = v
    return env_map


class RebindPhase(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    REMOVED = "removed"
    RECREATING = "recreating"
    FAILED = "failed"


class DockerManager:
    """Maps the server lifecycle operations onto docker-py calls.

    Servers are addressed by container name. Nothing is stored here apart from
    the in-flight rebind phases; every record is re-derived from the runtime.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        templates: ServerTemplateManager | None = None,
        allocator: PortAllocator | None = None,
    ):
        self._client = client
        self.templates = templates or get_template_manager()
        self._allocator = allocator
        self._phases: Dict[str, RebindPhase] = {}
        self._phases_lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        # Connected on first use so an unreachable daemon fails the call, not the dependency.
        if self._client is None:
            self._client = self._init_client()
        return self._client

    @property
    def allocator(self) -> PortAllocator:
        if self._allocator is None:
            self._allocator = PortAllocator(self.client)
        return self._allocator

    def _init_client(self) -> docker.DockerClient:
        docker_host = os.environ.get("DOCKER_HOST")
        try:
            if docker_host:
                return docker.DockerClient(base_url=docker_host)
            return docker.from_env()
        except docker.errors.DockerException as exc:
            raise RuntimeFailure(f"Cannot connect to Docker: {exc}", exc) from exc

    @contextmanager
    def _runtime_call(self, action: str):
        try:
            yield
        except docker.errors.DockerException as e:
            logger.error(f"Docker call failed ({action}): {e}")
            raise RuntimeFailure(str(e), e) from e

    def ping(self) -> dict:
        with self._runtime_call("version"):
            info = self.client.version()
        return {"connected": True, "version": info.get("Version")}

    # ---- lookup / listing ----

    def get_container(self, name: str):
        """Exact-name lookup across all containers, managed or not."""
        with self._runtime_call(f"lookup {name}"):
            matches = self.client.containers.list(all=True, filters={"name": f"^/{re.escape(name)}$"})
        for c in matches:
            if c.name == name:
                return c
        raise NotFound(name)

    def list_servers(self) -> Tuple[List[ManagedServer], List[str]]:
        """Project every container carrying the management label.

        Containers that vanish between list and inspect become warnings.
        """
        label = f"{MANAGEMENT_LABEL}={MANAGEMENT_LABEL_VALUE}"
        with self._runtime_call("list"):
            containers = self.client.containers.list(all=True, sparse=True, filters={"label": label})
        servers: List[ManagedServer] = []
        warnings: List[str] = []
        for c in containers:
            try:
                c.reload()
            except docker.errors.NotFound:
                warnings.append(f"container {c.short_id} disappeared before inspection")
                continue
            except docker.errors.DockerException as e:
                warnings.append(f"container {c.short_id} could not be inspected: {e}")
                continue
            projection = project(c.attrs)
            servers.append(projection.server)
            warnings.extend(f"{projection.server.name}: {w}" for w in projection.warnings)
        for w in warnings:
            logger.warning(f"list_servers: {w}")
        return servers, warnings

    def get_server(self, name: str) -> ManagedServer:
        container = self.get_container(name)
        projection = project(container.attrs)
        for w in projection.warnings:
            logger.warning(f"{name}: {w}")
        return projection.server

    # ---- create ----

    def _data_bind(self, name: str) -> str:
        return f"{SERVERS_HOST_ROOT / name}:{SERVER_DATA_PATH}"

    def create_server(
        self,
        name,
        image: Optional[str] = None,
        template: Optional[str] = None,
        host_port=None,
        env: Optional[Dict[str, object]] = None,
    ) -> dict:
        """Create a container for ``name`` and start it right away.

        Image and defaults come from ``template`` when it is known, otherwise
        from ``image``. Environment precedence is request > template > the
        Minecraft base env. All validation happens before the first runtime
        call. A container that is created but fails to start is left behind
        in the ``created`` state.
        """
        name = validate_name(name)
        requested_port = validate_port(host_port) if host_port is not None else None
        if env is not None and not isinstance(env, dict):
            raise InvalidInput("env must be an object of key/value pairs")

        tpl = self.templates.get(template) if template else None
        if template and tpl is None:
            logger.info(f"Unknown template '{template}' for {name}; falling back to explicit image")
        resolved_image = tpl.image if tpl else (image or "").strip()
        if not resolved_image:
            raise MissingImage("name and image (or a known template) are required")

        minecraft = is_minecraft(resolved_image, tpl)
        environment: Dict[str, str] = {}
        if minecraft:
            environment.update(BASE_MINECRAFT_ENV)
        if tpl:
            environment.update(tpl.env)
        if env:
            environment.update({str(k): str(v) for k, v in env.items()})

        if minecraft:
            container_ports = [MINECRAFT_PORT_KEY]
        elif tpl:
            container_ports = list(tpl.ports)
        else:
            container_ports = []
        if requested_port is not None and not container_ports:
            logger.warning(f"Ignoring port {requested_port} for {name}: image {resolved_image} exposes no known game port")

        labels = {MANAGEMENT_LABEL: MANAGEMENT_LABEL_VALUE}
        if tpl:
            labels[TEMPLATE_LABEL] = tpl.id

        reserved: List[int] = []
        bindings: Dict[str, int] = {}
        try:
            for index, cport in enumerate(container_ports):
                if index == 0 and requested_port is not None:
                    # Held too, so the remaining ports of this template skip it.
                    self.allocator.hold(requested_port)
                    reserved.append(requested_port)
                    bindings[cport] = requested_port
                    continue
                hp = self.allocator.reserve(int(cport.split("/", 1)[0]))
                reserved.append(hp)
                bindings[cport] = hp
            primary = container_ports[0] if container_ports else None
            if primary:
                labels[PRIMARY_PORT_LABEL] = primary
                labels[HOST_PORT_LABEL] = str(bindings[primary])

            logger.info(f"Creating server {name} from {resolved_image} with ports {bindings or 'none'}")
            with self._runtime_call(f"create {name}"):
                container = self.client.containers.create(
                    resolved_image,
                    name=name,
                    labels=labels,
                    environment=environment,
                    ports=bindings or None,
                    volumes=[self._data_bind(name)],
                    restart_policy={"Name": "no"},
                    detach=True,
                )
            with self._runtime_call(f"start {name}"):
                container.start()
        finally:
            self.allocator.release(reserved)

        logger.info(f"Container {container.id} created and started for server {name}")
        self._clear_phase(name)
        result = {"id": container.id[:12], "name": name}
        if primary:
            result["hostPort"] = bindings[primary]
        if len(bindings) > 1:
            result["ports"] = dict(bindings)
        return result

    # ---- power ----

    def start_server(self, name: str) -> dict:
        container = self.get_container(name)
        with self._runtime_call(f"start {name}"):
            container.start()
        logger.info(f"Started server {name}")
        return {"result": "started"}

    def stop_server(self, name: str) -> dict:
        container = self.get_container(name)
        with self._runtime_call(f"stop {name}"):
            container.stop()
        logger.info(f"Stopped server {name}")
        return {"result": "stopped"}

    def delete_server(self, name: str) -> dict:
        """Force-remove the container. The host data directory is kept."""
        container = self.get_container(name)
        with self._runtime_call(f"remove {name}"):
            container.remove(force=True)
        logger.info(f"Removed server {name}")
        self._clear_phase(name)
        return {"result": "removed"}

    def get_server_logs(self, name: str, tail: int = LOG_TAIL_LINES) -> str:
        container = self.get_container(name)
        with self._runtime_call(f"logs {name}"):
            raw = container.logs(stdout=True, stderr=True, tail=tail)
        return raw.decode("utf-8", errors="replace")

    # ---- rebind ----

    def _set_phase(self, name: str, phase: RebindPhase) -> None:
        with self._phases_lock:
            self._phases[name] = phase
        logger.info(f"Rebind {name}: {phase.value}")

    def _clear_phase(self, name: str) -> None:
        with self._phases_lock:
            self._phases.pop(name, None)

    def transition_state(self, name: str) -> Optional[RebindPhase]:
        with self._phases_lock:
            return self._phases.get(name)

    def rebind_port(self, name: str, new_port) -> dict:
        """Recreate ``name`` with its primary game port bound to ``new_port``.

        running -> stopping -> removed -> recreating -> running, or failed.
        Image, environment, labels and volume binds are copied from the
        inspection taken before removal. Only single-port servers qualify.
        """
        port = validate_port(new_port)
        container = self.get_container(name)
        attrs = container.attrs or {}
        config = attrs.get("Config") or {}
        host_config = attrs.get("HostConfig") or {}
        labels = dict(config.get("Labels") or {})
        primary = labels.get(PRIMARY_PORT_LABEL) or MINECRAFT_PORT_KEY
        declared = host_config.get("PortBindings") or {}
        if len(declared) > 1:
            raise InvalidInput(f"Server '{name}' binds {len(declared)} ports; port rebind supports single-port servers only")

        image = config.get("Image")
        environment = list(config.get("Env") or [])
        binds = list(host_config.get("Binds") or [])
        restart_policy = host_config.get("RestartPolicy") or {"Name": "no"}
        labels[PRIMARY_PORT_LABEL] = primary
        labels[HOST_PORT_LABEL] = str(port)
        data_path = str(SERVERS_HOST_ROOT / name)
        for bind in binds:
            if bind.split(":", 1)[0].rstrip("/").endswith(f"/{name}"):
                data_path = bind.split(":", 1)[0]
                break

        self._set_phase(name, RebindPhase.STOPPING)
        try:
            container.stop()
        except docker.errors.DockerException as e:
            # Forced removal below copes with a container that is still running.
            logger.warning(f"Stop before rebind of {name} failed, continuing with forced removal: {e}")
        try:
            with self._runtime_call(f"remove {name}"):
                container.remove(force=True)
        except RuntimeFailure:
            self._set_phase(name, RebindPhase.RUNNING)
            raise
        self._set_phase(name, RebindPhase.REMOVED)

        self._set_phase(name, RebindPhase.RECREATING)
        try:
            new_container = self.client.containers.create(
                image,
                name=name,
                labels=labels,
                environment=environment,
                ports={primary: port},
                volumes=binds,
                restart_policy=restart_policy,
                detach=True,
            )
        except docker.errors.DockerException as e:
            self._set_phase(name, RebindPhase.FAILED)
            logger.error(f"Recreate of {name} failed after removal; server is absent, data kept at {data_path}: {e}")
            raise PartialFailure(
                name,
                f"Server '{name}' was removed but could not be recreated: {e}",
                data_path=data_path,
                phase=RebindPhase.REMOVED.value,
            ) from e
        try:
            new_container.start()
        except docker.errors.DockerException as e:
            self._set_phase(name, RebindPhase.FAILED)
            logger.error(f"Recreated {name} but start failed; container left in created state: {e}")
            raise PartialFailure(
                name,
                f"Server '{name}' was recreated on port {port} but failed to start: {e}",
                data_path=data_path,
                phase="created",
            ) from e

        self._set_phase(name, RebindPhase.RUNNING)
        return {"result": "rebound", "hostPort": port}

    # ---- streams ----

    def open_log_stream(self, container, tail: int = LOG_TAIL_LINES):
        """Follow-mode combined stdout/stderr; close() on the result ends it."""
        with self._runtime_call(f"logs follow {container.name}"):
            return container.logs(stdout=True, stderr=True, stream=True, follow=True, tail=tail)

    def open_console(self, container):
        """Interactive shell exec with a TTY; returns the hijacked socket."""
        with self._runtime_call(f"exec {container.name}"):
            exec_id = self.client.api.exec_create(
                container.id,
                cmd=[CONSOLE_SHELL],
                stdin=True,
                stdout=True,
                stderr=True,
                tty=True,
            )
            return self.client.api.exec_start(exec_id["Id"], tty=True, socket=True)


_docker_manager: DockerManager | None = None

def get_docker_manager() -> DockerManager:
    global _docker_manager
    if _docker_manager is None:
        _docker_manager = DockerManager()
    return _docker_manager
