"""Content generation router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.generation import GENERATION_STATUSES
from routers.auth_scope import get_account_context
from routers.rate_limit import rate_limit
from services import orchestrator, usage_stats
from services.generation_cache import GenerationSettings
from services.generator import ContentGenerator, get_generator
from services.orchestrator import AccountContext, GenerationRequest
from services.tools import list_tool_configs, serialize_tool

router = APIRouter()


class GenerateContentRequest(BaseModel):
    tool_name: str = Field(min_length=1, max_length=64)
    transcript: str = Field(min_length=1, max_length=200_000)
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class RateGenerationRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = Field(default=None, max_length=2000)


@router.get("/tools")
async def list_tools(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    tools = await list_tool_configs(db)
    return {"tools": [serialize_tool(tool) for tool in tools if tool.is_enabled]}


@router.post("/content")
async def generate_content(
    request: GenerateContentRequest,
    _rate_limit: None = Depends(rate_limit("generate_content", limit=120, window_seconds=3600)),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
    generator: ContentGenerator = Depends(get_generator),
):
    result = await orchestrator.orchestrate_generation(
        db,
        account,
        GenerationRequest(
            tool_name=request.tool_name,
            source_text=request.transcript,
            settings=request.settings,
        ),
        generator,
    )
    return {"success": True, "data": result.to_dict()}


@router.get("")
async def list_generations(
    tool_name: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    if status and status not in GENERATION_STATUSES:
        raise HTTPException(status_code=422, detail=f"status must be one of {', '.join(GENERATION_STATUSES)}")
    items = await orchestrator.list_generations(
        db,
        account.account_id,
        tool_name=tool_name,
        status=status,
        limit=limit,
        offset=offset,
    )
    return {
        "items": [orchestrator.serialize_generation(item) for item in items],
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats")
async def generation_stats(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return await orchestrator.get_generation_stats(db, account.account_id)


@router.get("/usage")
async def usage_summary(
    days: int = Query(default=30, ge=1, le=365),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    return await usage_stats.get_usage_stats(db, account.account_id, days=days)


@router.get("/{generation_id}")
async def get_generation(
    generation_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    generation = await orchestrator.get_generation(db, account.account_id, generation_id)
    return orchestrator.serialize_generation(generation)


@router.post("/{generation_id}/retry")
async def retry_generation(
    generation_id: str,
    _rate_limit: None = Depends(rate_limit("generate_content", limit=120, window_seconds=3600)),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
    generator: ContentGenerator = Depends(get_generator),
):
    result = await orchestrator.retry_generation(db, account, generation_id, generator)
    return {"success": True, "data": result.to_dict()}


@router.post("/{generation_id}/cancel")
async def cancel_generation(
    generation_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    generation = await orchestrator.cancel_generation(db, account.account_id, generation_id)
    return orchestrator.serialize_generation(generation)


@router.post("/{generation_id}/rate")
async def rate_generation(
    generation_id: str,
    request: RateGenerationRequest,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    await orchestrator.rate_generation(db, account.account_id, generation_id, request.rating, request.feedback)
    return {"success": True, "message": "Rating submitted successfully"}


@router.delete("/{generation_id}")
async def delete_generation(
    generation_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db),
):
    await orchestrator.delete_generation(db, account.account_id, generation_id)
    return {"success": True}
