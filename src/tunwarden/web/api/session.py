"""REST API for the tunnel session."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tunwarden.errors import ErrorKind
from tunwarden.session.models import OperationResult

router = APIRouter(tags=["session"])

_STATUS_BY_KIND = {
    ErrorKind.SESSION: 409,
    ErrorKind.PRIVILEGE: 403,
}


class ConnectRequest(BaseModel):
    profile_id: str


def _respond(result: OperationResult) -> JSONResponse:
    if result.success:
        status = 200
    else:
        status = _STATUS_BY_KIND.get(result.error_kind, 400)
    return JSONResponse(status_code=status, content=result.to_dict())


@router.get("/session")
async def get_session(request: Request):
    manager = request.app.state.manager
    data = manager.get_session_state().to_dict()
    data["stats"] = manager.stats.to_dict()
    return data


@router.post("/session/connect")
async def connect(body: ConnectRequest, request: Request):
    manager = request.app.state.manager
    if manager.store.get(body.profile_id) is None:
        return JSONResponse(
            status_code=404,
            content={"detail": "Profile not found"},
        )
    return _respond(await manager.connect(body.profile_id))


@router.post("/session/disconnect")
async def disconnect(request: Request):
    return _respond(await request.app.state.manager.disconnect())


@router.get("/session/logs")
async def get_logs(request: Request, limit: int = 200):
    logs = request.app.state.manager.logs
    return [line.to_dict() for line in logs[-limit:]] if limit > 0 else []


@router.get("/session/traffic")
async def get_traffic(request: Request):
    manager = request.app.state.manager
    return {
        "samples": [sample.to_dict() for sample in manager.samples],
        "stats": manager.stats.to_dict(),
    }
