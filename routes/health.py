"""Liveness and Prometheus endpoints."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response

from prompt_mining.service import MintingService

from .prompts import get_service

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(service: MintingService = Depends(get_service)) -> JSONResponse:
    report: Dict[str, Any] = await service.health()
    status_code = 200 if report["status"] == "ok" else 503
    return JSONResponse({"success": status_code == 200, "data": report}, status_code=status_code)


@router.get("/metrics")
async def metrics(service: MintingService = Depends(get_service)) -> Response:
    return Response(service.metrics(), media_type=service.metrics_content_type)


__all__ = ["router"]
