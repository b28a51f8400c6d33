"""Test fixtures: an in-memory stand-in for the docker-py client."""

import copy
import queue
import re
import sys
import threading
import uuid
from pathlib import Path

import docker
import pytest

backend_dir = Path(__file__).resolve().parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from docker_manager import DockerManager  # noqa: E402
from port_allocator import PortAllocator, PortReservations  # noqa: E402
from server_templates import ServerTemplateManager  # noqa: E402


def _bindings(ports: dict, host_ip: str = "") -> dict:
    return {cport: [{"HostIp": host_ip, "HostPort": str(hp)}] for cport, hp in (ports or {}).items()}


class FakeLogStream:
    """Mimics docker-py's CancellableStream: an iterator of byte chunks with close()."""

    def __init__(self, chunks, block_at_end=False):
        self._chunks = list(chunks)
        self._block_at_end = block_at_end
        self._closed = threading.Event()

    @property
    def closed(self):
        return self._closed.is_set()

    def __iter__(self):
        return self

    def __next__(self):
        if self._chunks and not self.closed:
            return self._chunks.pop(0)
        if self._block_at_end:
            # Follow mode: wait for more output until the stream is closed.
            self._closed.wait(timeout=5)
        raise StopIteration

    def close(self):
        self._closed.set()


class FakeConsoleSocket:
    """Echoing shell socket. ``script`` replaces echo with canned output ending in EOF."""

    def __init__(self, script=None):
        self.sent = []
        self.closed = False
        self._out = queue.Queue()
        self._echo = script is None
        for chunk in script or []:
            self._out.put(chunk)
        if script is not None:
            self._out.put(b"")

    def sendall(self, data):
        self.sent.append(data)
        if self._echo:
            self._out.put(data)

    def recv(self, size):
        return self._out.get(timeout=5)

    def shutdown(self, how):
        self._out.put(b"")

    def close(self):
        self.closed = True


class FakeContainer:
    def __init__(self, runtime, attrs):
        self._runtime = runtime
        self.attrs = attrs
        self.log_output = b""
        self.log_chunks = None
        self.log_follow = False

    @property
    def id(self):
        return self.attrs["Id"]

    @property
    def short_id(self):
        return self.id[:12]

    @property
    def name(self):
        return self.attrs["Name"].lstrip("/")

    @property
    def status(self):
        return self.attrs["State"]["Status"]

    def _live(self):
        live = self._runtime.by_id.get(self.id)
        if live is None:
            raise docker.errors.NotFound(f"No such container: {self.id}")
        return live

    def reload(self):
        self.attrs = copy.deepcopy(self._live().attrs)

    def start(self):
        self._runtime.record("start", self.name)
        self._runtime.maybe_fail("start")
        live = self._live()
        live.attrs["State"] = {"Status": "running"}
        declared = live.attrs["HostConfig"].get("PortBindings") or {}
        live.attrs["NetworkSettings"]["Ports"] = {
            cport: [{"HostIp": "0.0.0.0", "HostPort": b[0]["HostPort"]}] for cport, b in declared.items()
        }
        self.attrs = copy.deepcopy(live.attrs)

    def stop(self, timeout=None):
        self._runtime.record("stop", self.name)
        self._runtime.maybe_fail("stop")
        live = self._live()
        live.attrs["State"] = {"Status": "exited"}
        live.attrs["NetworkSettings"]["Ports"] = {}
        self.attrs = copy.deepcopy(live.attrs)

    def remove(self, force=False):
        self._runtime.record("remove", self.name)
        self._runtime.maybe_fail("remove")
        live = self._live()
        if live.status == "running" and not force:
            raise docker.errors.APIError("cannot remove a running container")
        del self._runtime.by_id[self.id]

    def logs(self, stdout=True, stderr=True, tail="all", stream=False, follow=False):
        self._runtime.record("logs", self.name)
        self._runtime.maybe_fail("logs")
        live = self._live()
        if stream:
            stream_obj = FakeLogStream(
                live.log_chunks if live.log_chunks is not None else [live.log_output],
                block_at_end=live.log_follow,
            )
            self._runtime.log_streams.append(stream_obj)
            return stream_obj
        return live.log_output


class FakeContainers:
    def __init__(self, runtime):
        self._runtime = runtime

    def _view(self, live):
        view = FakeContainer(self._runtime, copy.deepcopy(live.attrs))
        return view

    def list(self, all=False, filters=None, sparse=False):
        self._runtime.record("list", filters)
        self._runtime.maybe_fail("list")
        result = []
        for live in self._runtime.by_id.values():
            if not all and live.status != "running":
                continue
            filters = filters or {}
            if "label" in filters:
                key, _, value = filters["label"].partition("=")
                if (live.attrs["Config"].get("Labels") or {}).get(key) != value:
                    continue
            if "name" in filters and not re.search(filters["name"], live.attrs["Name"]):
                continue
            result.append(self._view(live))
        return result

    def get(self, id_or_name):
        for live in self._runtime.by_id.values():
            if live.id == id_or_name or live.name == id_or_name:
                return self._view(live)
        raise docker.errors.NotFound(f"No such container: {id_or_name}")

    def create(self, image, name=None, labels=None, environment=None, ports=None, volumes=None,
               restart_policy=None, detach=False, **kwargs):
        self._runtime.record("create", name)
        self._runtime.maybe_fail("create")
        if any(live.name == name for live in self._runtime.by_id.values()):
            raise docker.errors.APIError(f'Conflict. The container name "/{name}" is already in use')
        if isinstance(environment, dict):
            env_list = [f"{k}={v}" for k, v in environment.items()]
        else:
            env_list = list(environment or [])
        attrs = {
            "Id": uuid.uuid4().hex + uuid.uuid4().hex,
            "Name": f"/{name}",
            "Config": {"Image": image, "Labels": dict(labels or {}), "Env": env_list},
            "HostConfig": {
                "PortBindings": _bindings(ports),
                "Binds": list(volumes or []),
                "RestartPolicy": restart_policy or {},
            },
            "State": {"Status": "created"},
            "NetworkSettings": {"Ports": {}},
        }
        live = FakeContainer(self._runtime, attrs)
        self._runtime.by_id[live.id] = live
        return self._view(live)


class FakeAPI:
    def __init__(self, runtime):
        self._runtime = runtime

    def exec_create(self, container, cmd, **kwargs):
        self._runtime.record("exec_create", container)
        self._runtime.maybe_fail("exec_create")
        return {"Id": "exec-1"}

    def exec_start(self, exec_id, **kwargs):
        self._runtime.record("exec_start", exec_id)
        return self._runtime.console_socket


class FakeDockerClient:
    """Keeps containers in a dict; ``fail`` maps an operation name to an exception to raise."""

    def __init__(self):
        self.by_id = {}
        self.calls = []
        self.fail = {}
        self.console_socket = None
        self.log_streams = []
        self.containers = FakeContainers(self)
        self.api = FakeAPI(self)

    def record(self, op, arg):
        self.calls.append((op, arg))

    def maybe_fail(self, op):
        error = self.fail.get(op)
        if error is not None:
            raise error

    def version(self):
        self.maybe_fail("version")
        return {"Version": "27.0.0"}

    def add_container(self, name, image="alpine", labels=None, ports=None, running=True, health=None):
        """Seed a container as if something else had created it."""
        view = self.containers.create(image, name=name, labels=labels, ports=ports)
        live = self.by_id[view.id]
        if running:
            live.start()
        if health:
            live.attrs["State"]["Health"] = {"Status": health}
        self.calls.clear()
        return live

    def names(self):
        return sorted(live.name for live in self.by_id.values())

    def runtime_ops(self):
        return [op for op, _ in self.calls]


@pytest.fixture
def fake_client():
    return FakeDockerClient()


@pytest.fixture
def manager(fake_client):
    allocator = PortAllocator(fake_client, PortReservations(ttl=60))
    return DockerManager(client=fake_client, templates=ServerTemplateManager(), allocator=allocator)


@pytest.fixture
def api_client(manager):
    from fastapi.testclient import TestClient

    from app import app
    from docker_manager import get_docker_manager

    app.dependency_overrides[get_docker_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def unreachable_api(monkeypatch):
    """The real app and manager singleton with a Docker daemon that refuses connections."""
    from fastapi.testclient import TestClient

    import docker_manager
    from app import app

    def refuse(*args, **kwargs):
        raise docker.errors.DockerException("Error while fetching server API version")

    monkeypatch.delenv("DOCKER_HOST", raising=False)
    monkeypatch.setattr(docker, "from_env", refuse)
    monkeypatch.setattr(docker_manager, "_docker_manager", None)
    app.dependency_overrides.clear()
    return TestClient(app)
