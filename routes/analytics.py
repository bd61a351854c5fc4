"""FastAPI router exposing gateway-side prompt analytics."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from prompt_mining.service import MintingService

from .prompts import get_service
from .security import require_read_access

router = APIRouter(prefix="/api/analytics", tags=["analytics"], dependencies=[Depends(require_read_access)])


@router.get("/prompts")
async def customer_prompts(
    page: int = Query(default=1),
    limit: int = Query(default=50),
    chain_id: Optional[int] = Query(default=None, alias="chainId"),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    """Paginated history of prompts minted under this gateway account."""

    return {"success": True, "data": await service.list_prompts(page, limit, chain_id)}


@router.get("/time-series")
async def time_series(
    period: str = Query(...),
    date: Optional[str] = Query(default=None),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    return {"success": True, "data": await service.get_analytics(period, date)}


@router.get("/stats")
async def stats(service: MintingService = Depends(get_service)) -> Dict[str, Any]:
    return {"success": True, "data": await service.get_stats()}


__all__ = ["router"]
