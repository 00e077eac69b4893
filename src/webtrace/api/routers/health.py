"""
webtrace.api.routers.health

Health endpoint.

Responsibilities:
- Provide liveness check (`/healthz`).
"""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
