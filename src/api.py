"""FastAPI REST API over the plugin engine and credential vault.

Run with: uvicorn api:app (from src/), or python src/api.py.
"""

import logging
import sys
from pathlib import Path

# Ensure src is on path when run as src.api from repo root
_src = Path(__file__).resolve().parent
if str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

import config
from api_schemas import ConnectionBody, CredentialBody, ExecBody, TreeActionBody
from errors import (
    InvocationCrashError,
    InvocationTimeoutError,
    PluginNotFoundError,
    QueryboxError,
    VaultEmptyKeyError,
    VaultNotFoundError,
)
from plugin_service import PluginService
from schemas import (
    AuthForm,
    ConnectionTreeResponse,
    ExecResponse,
    PluginDescriptor,
    TestConnectionResponse,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)
logger = logging.getLogger("api")

app = FastAPI(title="querybox plugin API")

_service: PluginService | None = None

# Most specific first; the first isinstance match wins.
_STATUS_FOR_ERROR: list[tuple[type[Exception], int]] = [
    (PluginNotFoundError, 404),
    (VaultNotFoundError, 404),
    (VaultEmptyKeyError, 422),
    (InvocationTimeoutError, 504),
    (InvocationCrashError, 502),
]


@app.on_event("startup")
def on_startup() -> None:
    global _service
    _service = PluginService.from_config()
    _service.start()
    logger.info("Plugin engine started (vault backend: %s)", _service.vault.backend)


@app.on_event("shutdown")
def on_shutdown() -> None:
    global _service
    service, _service = _service, None
    if service is not None:
        service.close()


@app.exception_handler(QueryboxError)
def handle_engine_error(request: Request, exc: QueryboxError):
    """Map engine errors to HTTP statuses; anything unmapped is a 500."""
    for error_type, status in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status = 500
        logger.error("Unhandled engine error for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def get_service() -> PluginService:
    """Dependency returning the running PluginService."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Plugin engine not started")
    return _service


@app.get("/plugins", response_model=list[PluginDescriptor])
def list_plugins(service: PluginService = Depends(get_service)) -> list[PluginDescriptor]:
    return service.list_plugins()


@app.post("/plugins/rescan", response_model=list[PluginDescriptor])
def rescan_plugins(service: PluginService = Depends(get_service)) -> list[PluginDescriptor]:
    """Force a discovery pass and return the refreshed listing."""
    service.rescan()
    return service.list_plugins()


@app.post("/plugins/{name}/exec", response_model=ExecResponse, response_model_exclude_none=True)
def exec_plugin(name: str, body: ExecBody, service: PluginService = Depends(get_service)) -> ExecResponse:
    return service.exec_plugin(name, body.connection, body.query, body.options)


@app.get("/plugins/{name}/authforms", response_model=dict[str, AuthForm])
def get_auth_forms(name: str, service: PluginService = Depends(get_service)) -> dict[str, AuthForm]:
    return service.get_plugin_auth_forms(name)


@app.post("/plugins/{name}/connection-tree", response_model=ConnectionTreeResponse)
def get_connection_tree(
    name: str, body: ConnectionBody, service: PluginService = Depends(get_service)
) -> ConnectionTreeResponse:
    return service.get_connection_tree(name, body.connection)


@app.post("/plugins/{name}/tree-action", response_model=ExecResponse, response_model_exclude_none=True)
def exec_tree_action(
    name: str, body: TreeActionBody, service: PluginService = Depends(get_service)
) -> ExecResponse:
    return service.exec_tree_action(name, body.connection, body.action_query, body.options)


@app.post("/plugins/{name}/test-connection", response_model=TestConnectionResponse)
def test_connection(
    name: str, body: ConnectionBody, service: PluginService = Depends(get_service)
) -> TestConnectionResponse:
    return service.test_connection(name, body.connection)


@app.put("/credentials/{key}", status_code=204)
def store_credential(key: str, body: CredentialBody, service: PluginService = Depends(get_service)) -> None:
    service.store_credential(key, body.secret)
    logger.info("Stored credential '%s'", key)


@app.delete("/credentials/{key}", status_code=204)
def delete_credential(key: str, service: PluginService = Depends(get_service)) -> None:
    service.delete_credential(key)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8765)
