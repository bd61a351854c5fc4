"""FastAPI router for authorization, minting and mint-status endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from prompt_mining.errors import InputValidationError
from prompt_mining.hashing import is_valid_digest
from prompt_mining.service import MintingService

from .security import (
    SecurityContext,
    audit_event,
    require_mint_access,
    require_operator,
    require_read_access,
)

router = APIRouter(prefix="/api", tags=["prompts"])

RewardInput = Optional[Union[int, str, List[Union[int, str]]]]


def get_service(request: Request) -> MintingService:
    return request.app.state.service


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AuthorizeIn(_Body):
    content: str = Field(validation_alias=AliasChoices("content", "prompt"))
    beneficiary: str = Field(validation_alias=AliasChoices("beneficiary", "author"))
    reward: RewardInput = Field(default=None, validation_alias=AliasChoices("reward", "activityPoints"))
    chain_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("chainId", "chain_id"))


class SignableMintIn(_Body):
    content: str = Field(validation_alias=AliasChoices("content", "prompt"))
    author: str = Field(validation_alias=AliasChoices("author", "beneficiary"))
    reward: RewardInput = Field(default=None, validation_alias=AliasChoices("reward", "activityPoints"))
    gas: Optional[int] = None
    deadline: Optional[int] = None
    chain_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("chainId", "chain_id"))


class ExecuteMetaTxIn(_Body):
    request: Dict[str, Any]
    signature: str
    chain_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("chainId", "chain_id"))


@router.post("/prompts/authorize")
async def authorize_prompt(
    payload: AuthorizeIn,
    context: SecurityContext = Depends(require_mint_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    result = await service.authorize_for_external_signing(
        payload.content,
        payload.beneficiary,
        payload.reward,
        payload.chain_id,
    )
    audit_event(context, "prompts.authorize", digest=result["digest"])
    return _ok(result)


@router.post("/prompts/mint-sponsored")
async def mint_sponsored(
    payload: AuthorizeIn,
    context: SecurityContext = Depends(require_operator),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    receipt = await service.mint_for(payload.content, payload.beneficiary, payload.reward, payload.chain_id)
    audit_event(
        context,
        "prompts.mint_sponsored",
        digest=receipt.digest,
        beneficiary=payload.beneficiary,
        tx_hash=receipt.transaction_hash,
    )
    return _ok(receipt.to_dict())


@router.post("/prompts/signable-mint-data")
async def signable_mint_data(
    payload: SignableMintIn,
    context: SecurityContext = Depends(require_mint_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    result = await service.prepare_meta_transaction(
        payload.content,
        payload.author,
        payload.reward,
        gas=payload.gas,
        deadline=payload.deadline,
        chain_id=payload.chain_id,
    )
    audit_event(context, "prompts.signable_mint_data", digest=result["digest"])
    return _ok(result)


@router.post("/prompts/execute-metatx")
async def execute_metatx(
    payload: ExecuteMetaTxIn,
    context: SecurityContext = Depends(require_mint_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    receipt = await service.relay_meta_transaction(payload.request, payload.signature, payload.chain_id)
    audit_event(context, "prompts.execute_metatx", digest=receipt.digest, tx_hash=receipt.transaction_hash)
    return _ok(receipt.to_dict())


@router.get("/prompts/{digest}")
async def prompt_status(
    digest: str,
    chain_id: Optional[int] = Query(default=None, alias="chainId"),
    _context: SecurityContext = Depends(require_read_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    if not is_valid_digest(digest):
        raise InputValidationError("Digest must be a 0x-prefixed 32-byte hex string", code="INVALID_HASH")
    return _ok(await service.query_mint_status(digest, chain_id))


@router.get("/activity-points/{address}")
async def activity_points_balance(
    address: str,
    chain_id: Optional[int] = Query(default=None, alias="chainId"),
    _context: SecurityContext = Depends(require_read_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    return _ok(await service.query_balance(address, None, chain_id))


@router.get("/activity-points/{token}/{address}")
async def token_balance(
    token: str,
    address: str,
    chain_id: Optional[int] = Query(default=None, alias="chainId"),
    _context: SecurityContext = Depends(require_read_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    return _ok(await service.query_balance(address, token, chain_id))


@router.get("/quota")
async def quota(
    _context: SecurityContext = Depends(require_read_access),
    service: MintingService = Depends(get_service),
) -> Dict[str, Any]:
    return _ok(await service.query_quota())


__all__ = ["get_service", "router"]
