from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from config import LOG_TAIL_LINES
from docker_manager import DockerManager, get_docker_manager
from errors import NotFound
from server_templates import ServerTemplateManager, get_template_manager

router = APIRouter(tags=["servers"])


class ServerCreateRequest(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    template: Optional[str] = None
    port: Any = None  # validated by the manager so bad values answer 400, not 422
    env: Optional[Dict[str, Any]] = None


class PortChangeRequest(BaseModel):
    port: Any = None


@router.get("/servers")
def list_servers(dm: DockerManager = Depends(get_docker_manager)):
    servers, warnings = dm.list_servers()
    body: dict = {"servers": [s.to_api() for s in servers]}
    if warnings:
        body["warnings"] = warnings
    return body


@router.post("/servers/create")
def create_server(req: ServerCreateRequest, dm: DockerManager = Depends(get_docker_manager)):
    return dm.create_server(req.name, image=req.image, template=req.template, host_port=req.port, env=req.env)


@router.get("/servers/{name}")
def get_server(name: str, dm: DockerManager = Depends(get_docker_manager)):
    return dm.get_server(name).to_api()


@router.post("/servers/{name}/start")
def start_server(name: str, dm: DockerManager = Depends(get_docker_manager)):
    return dm.start_server(name)


@router.post("/servers/{name}/stop")
def stop_server(name: str, dm: DockerManager = Depends(get_docker_manager)):
    return dm.stop_server(name)


@router.post("/servers/{name}/remove")
def remove_server(name: str, dm: DockerManager = Depends(get_docker_manager)):
    return dm.delete_server(name)


@router.post("/servers/{name}/port")
def change_port(name: str, req: PortChangeRequest, dm: DockerManager = Depends(get_docker_manager)):
    """Destructive recreate: the container is removed and rebuilt on the new port."""
    return dm.rebind_port(name, req.port)


@router.get("/servers/{name}/transition")
def get_transition(name: str, dm: DockerManager = Depends(get_docker_manager)):
    phase = dm.transition_state(name)
    if phase is None:
        raise NotFound(name)
    return {"name": name, "phase": phase.value}


@router.get("/servers/{name}/logs", response_class=PlainTextResponse)
def get_server_logs(
    name: str,
    tail: int = Query(LOG_TAIL_LINES, ge=1, le=2000),
    dm: DockerManager = Depends(get_docker_manager),
):
    """Return the last N lines of combined stdout/stderr."""
    return PlainTextResponse(dm.get_server_logs(name, tail=tail), media_type="text/plain; charset=utf-8")


@router.get("/templates")
def list_templates(templates: ServerTemplateManager = Depends(get_template_manager)):
    return {"templates": [t.to_dict() for t in templates.list()]}


@router.get("/templates/{template_id}")
def get_template(template_id: str, templates: ServerTemplateManager = Depends(get_template_manager)):
    template = templates.get(template_id)
    if template is None:
        raise NotFound(template_id, what="Template")
    return template.to_dict()
