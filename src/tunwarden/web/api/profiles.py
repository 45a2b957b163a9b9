"""REST API for configured profiles."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["profiles"])


def _summary(profile, latency: float | None) -> dict:
    return {
        "id": profile.id,
        "name": profile.name,
        "protocol": type(profile).protocol.value,
        "address": profile.address,
        "port": profile.port,
        "network": profile.transport.network.value,
        "security": profile.security.kind.value,
        "latency_ms": latency,
    }


@router.get("/profiles")
async def list_profiles(request: Request):
    store = request.app.state.manager.store
    return [_summary(p, store.latency(p.id)) for p in store.all()]


@router.get("/profiles/{profile_id}")
async def get_profile(profile_id: str, request: Request):
    store = request.app.state.manager.store
    profile = store.get(profile_id)
    if profile is None:
        return JSONResponse(
            status_code=404,
            content={"detail": "Profile not found"},
        )
    return _summary(profile, store.latency(profile_id))
