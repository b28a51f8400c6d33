from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from config import ALLOWED_ORIGINS, API_PORT, APP_NAME, APP_VERSION, LOG_LEVEL
from docker_manager import DockerManager, get_docker_manager
from errors import InvalidInput, RuntimeFailure, ServerManagerError
from realtime_routes import router as realtime_router, sessions
from server_routes import router as server_router

logger = logging.getLogger(__name__)

app = FastAPI(title=APP_NAME, version=APP_VERSION)

# ---- CORS Configuration ----
_origins_env = ALLOWED_ORIGINS.strip()
if (_origins_env.startswith('"') and _origins_env.endswith('"')) or (_origins_env.startswith("'") and _origins_env.endswith("'")):
    _origins_env = _origins_env[1:-1]
if _origins_env == "*":
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip().strip('"').strip("'") for o in _origins_env.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )

app.include_router(server_router)
app.include_router(realtime_router)


@app.exception_handler(ServerManagerError)
async def server_manager_error_handler(request: Request, exc: ServerManagerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg") if errors else "invalid request"
    return JSONResponse(status_code=400, content=InvalidInput(f"Invalid request: {detail}").to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=RuntimeFailure(str(exc) or exc.__class__.__name__).to_dict())


@app.on_event("startup")
async def startup_event():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info(f"{APP_NAME} {APP_VERSION} starting")


@app.get("/health")
def health(dm: DockerManager = Depends(get_docker_manager)):
    """Runtime connectivity plus the number of live stream sessions."""
    try:
        docker_health = dm.ping()
        status = "ok"
    except ServerManagerError as e:
        docker_health = {"connected": False, "version": None, "error": e.message}
        status = "degraded"
    return {"status": status, "docker": docker_health, "stream_sessions": sessions.total()}


@app.get("/version")
def version_info():
    return {"name": APP_NAME, "version": APP_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
