"""Generation orchestrator.

Sequences one request through risk check, credit check, cache lookup, the
external generator, and finally a debit committed together with the completed
Generation row, followed by a system audit entry. Content is only returned
after a successful debit or from a cache hit, and a failed row is never billed.

State flow::

    Requested -> RiskChecked -> CreditChecked -> CacheHit | Generating -> Debited -> Completed -> Audited
                      |               |                         |
                      +---------------+-------------------------+--> Failed
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, utcnow
from models.generation import Generation
from services import audit_trail, generation_cache, ledger, risk_guard, usage_stats
from services.errors import (
    AccountBanned,
    AccountNotFound,
    GenerationCancelled,
    GenerationNotFound,
    GenerationUpstreamFailure,
    InsufficientCredits,
    InvalidGenerationState,
    LedgerInconsistency,
    RateLimited,
)
from services.generation_cache import GenerationSettings
from services.generator import ContentGenerator, build_prompt
from services.tools import get_tool_definition, require_enabled_tool

logger = logging.getLogger(__name__)

IN_PROGRESS_STATUSES = ("pending", "processing")
CANCELLED_MESSAGE = "Cancelled by caller before completion."
INTERRUPTED_MESSAGE = "Generation was interrupted. Retry the generation."


@dataclass(frozen=True)
class AccountContext:
    """Identity facts supplied with each authenticated request."""

    account_id: str
    is_banned: bool = False
    role: str = "user"


class GenerationRequest(BaseModel):
    tool_name: str
    source_text: str = Field(min_length=1)
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


@dataclass(frozen=True)
class GenerationResult:
    generation_id: str
    tool_name: str
    content: str
    was_cached: bool
    credits_charged: int
    balance_after: int
    model: str
    total_tokens: int = 0
    processing_ms: int = 0
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.generation_id,
            "tool_name": self.tool_name,
            "content": self.content,
            "was_cached": self.was_cached,
            "credits_charged": self.credits_charged,
            "balance_after": self.balance_after,
            "model": self.model,
            "tokens_used": self.total_tokens,
            "generation_time_ms": self.processing_ms,
            "flagged": self.flagged,
        }


async def _mark_failed(db: AsyncSession, generation_id: str, message: str) -> bool:
    result = await db.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.status.in_(IN_PROGRESS_STATUSES))
        .values(status="failed", error_message=message[:500], completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def orchestrate_generation(
    db: AsyncSession,
    account: AccountContext,
    request: GenerationRequest,
    generator: ContentGenerator,
    *,
    retry_of_id: Optional[str] = None,
) -> GenerationResult:
    """Run one metered, cached generation pass for ``account``."""
    # Requested
    tool_config = await require_enabled_tool(db, request.tool_name)
    tool = get_tool_definition(tool_config.tool_name)
    fingerprint = generation_cache.compute_fingerprint(request.source_text, request.settings, tool.name)

    # RiskChecked
    if account.is_banned:
        raise AccountBanned()
    decision = await risk_guard.check(
        db,
        account.account_id,
        tool.name,
        hourly_limit=tool_config.hourly_limit,
        daily_limit=tool_config.daily_limit,
    )
    await risk_guard.record_flag(
        db,
        account.account_id,
        tool.name,
        decision,
        hourly_limit=tool_config.hourly_limit,
        daily_limit=tool_config.daily_limit,
    )
    if not decision.allowed:
        raise RateLimited(
            f"Generation limit reached for {tool.label}. Try again later.",
            retry_after=decision.retry_after,
        )

    # CreditChecked
    cost = tool_config.credit_cost
    balance = await ledger.get_balance(db, account.account_id)
    if balance < cost:
        raise InsufficientCredits(required=cost, available=balance)

    cached = await generation_cache.lookup(db, fingerprint, tool.name)
    if cached is not None:
        served_id = cached.id
        if cached.user_id != account.account_id:
            # The caller gets its own zero-charge row so the id resolves in its history.
            served = Generation(
                user_id=account.account_id,
                tool_name=tool.name,
                fingerprint=fingerprint,
                model=cached.model,
                status="completed",
                source_text=request.source_text,
                settings_json=request.settings.model_dump(),
                result_text=cached.result_text,
                credits_charged=0,
                total_tokens=0,
                processing_ms=0,
                cached_from_id=cached.cached_from_id or cached.id,
                completed_at=utcnow(),
            )
            db.add(served)
            await db.flush()
            served_id = served.id
        await usage_stats.bump(db, account.account_id, tool.name, generations_count=1, cache_hits=1)
        await db.commit()
        logger.info("Cache hit for %s on %s (generation %s)", account.account_id, tool.name, cached.id)
        return GenerationResult(
            generation_id=served_id,
            tool_name=tool.name,
            content=cached.result_text or "",
            was_cached=True,
            credits_charged=0,
            balance_after=balance,
            model=cached.model,
            total_tokens=int(cached.total_tokens or 0),
            processing_ms=int(cached.processing_ms or 0),
            flagged=decision.flagged,
        )

    generation = Generation(
        user_id=account.account_id,
        tool_name=tool.name,
        fingerprint=fingerprint,
        model=tool_config.model,
        status="pending",
        source_text=request.source_text,
        settings_json=request.settings.model_dump(),
        retry_of_id=retry_of_id,
    )
    db.add(generation)
    await db.flush()
    generation_id = generation.id
    await usage_stats.bump(db, account.account_id, tool.name, cache_misses=1)
    await db.commit()

    started = await db.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.status == "pending")
        .values(status="processing")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if started.rowcount != 1:
        raise GenerationCancelled(generation_id)

    # Generating
    prompt = build_prompt(tool, request.source_text, request.settings)
    timeout = float(settings.GENERATION_TIMEOUT_SECONDS)
    clock = time.perf_counter()
    try:
        output = await asyncio.wait_for(generator.generate(prompt, tool_config.model), timeout=timeout)
    except asyncio.CancelledError:
        await _mark_failed(db, generation_id, CANCELLED_MESSAGE)
        raise
    except asyncio.TimeoutError as exc:
        logger.warning("Generation %s timed out after %.1fs", generation_id, timeout)
        await _mark_failed(db, generation_id, f"Generation timed out after {timeout:g}s")
        raise GenerationUpstreamFailure(generation_id) from exc
    except Exception as exc:
        logger.warning("Generation %s failed upstream: %s", generation_id, exc)
        await _mark_failed(db, generation_id, f"Upstream error: {exc}")
        raise GenerationUpstreamFailure(generation_id) from exc
    processing_ms = int((time.perf_counter() - clock) * 1000)

    # Debited + Completed, one transaction
    try:
        if cost > 0:
            await ledger.debit(
                db,
                account.account_id,
                cost,
                description=f"{tool.label} generation",
                generation_id=generation_id,
                commit=False,
            )
        completed = await db.execute(
            update(Generation)
            .where(Generation.id == generation_id, Generation.status == "processing")
            .values(
                status="completed",
                result_text=output.text,
                credits_charged=cost,
                prompt_tokens=output.prompt_tokens,
                completion_tokens=output.completion_tokens,
                total_tokens=output.total_tokens,
                processing_ms=processing_ms,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount != 1:
            await db.rollback()
            logger.info("Generation %s was cancelled during generation; no debit recorded", generation_id)
            raise GenerationCancelled(generation_id)
        await usage_stats.bump(
            db,
            account.account_id,
            tool.name,
            generations_count=1,
            tokens_used=output.total_tokens,
            credits_used=cost,
        )
        balance_after = await ledger.get_balance(db, account.account_id)
        await db.commit()
    except (InsufficientCredits, AccountNotFound) as exc:
        await db.rollback()
        logger.error(
            "Generated-but-unbilled work discarded: generation=%s account=%s cost=%s reason=%s",
            generation_id,
            account.account_id,
            cost,
            exc.message,
        )
        await _mark_failed(db, generation_id, f"Debit failed: {exc.message}")
        raise LedgerInconsistency(generation_id, exc.message) from exc

    await audit_trail.record(
        db,
        actor_id=None,
        action="generation",
        entity_type="generation",
        entity_id=generation_id,
        before={"credits": balance_after + cost, "status": "processing"},
        after={"credits": balance_after, "status": "completed"},
        reason=f"{tool.label} generation for {account.account_id}",
    )
    logger.info(
        "Generation %s completed for %s on %s (%s credits, %sms)",
        generation_id,
        account.account_id,
        tool.name,
        cost,
        processing_ms,
    )
    return GenerationResult(
        generation_id=generation_id,
        tool_name=tool.name,
        content=output.text,
        was_cached=False,
        credits_charged=cost,
        balance_after=balance_after,
        model=tool_config.model,
        total_tokens=output.total_tokens,
        processing_ms=processing_ms,
        flagged=decision.flagged,
    )


async def get_generation(db: AsyncSession, account_id: str, generation_id: str) -> Generation:
    result = await db.execute(
        select(Generation).where(
            Generation.id == generation_id,
            Generation.user_id == account_id,
            Generation.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
    )
    generation = result.scalar_one_or_none()
    if generation is None:
        raise GenerationNotFound(f"Generation {generation_id} not found")
    return generation


async def retry_generation(
    db: AsyncSession,
    account: AccountContext,
    generation_id: str,
    generator: ContentGenerator,
) -> GenerationResult:
    """Re-run a failed generation as a brand-new pass with the same inputs."""
    previous = await get_generation(db, account.account_id, generation_id)
    if previous.status != "failed":
        raise InvalidGenerationState("Only failed generations can be retried.")
    request = GenerationRequest(
        tool_name=previous.tool_name,
        source_text=previous.source_text,
        settings=GenerationSettings(**(previous.settings_json or {})),
    )
    return await orchestrate_generation(db, account, request, generator, retry_of_id=previous.id)


async def cancel_generation(db: AsyncSession, account_id: str, generation_id: str) -> Generation:
    generation = await get_generation(db, account_id, generation_id)
    if not await _mark_failed(db, generation.id, CANCELLED_MESSAGE):
        raise InvalidGenerationState("Only pending or processing generations can be cancelled.")
    await db.refresh(generation)
    return generation


async def rate_generation(
    db: AsyncSession,
    account_id: str,
    generation_id: str,
    rating: int,
    feedback: Optional[str] = None,
) -> Generation:
    if not 1 <= int(rating) <= 5:
        raise ValueError("rating must be between 1 and 5")
    generation = await get_generation(db, account_id, generation_id)
    if generation.status != "completed":
        raise InvalidGenerationState("Only completed generations can be rated.")
    generation.user_rating = int(rating)
    generation.user_feedback = feedback
    await db.commit()
    return generation


async def delete_generation(db: AsyncSession, account_id: str, generation_id: str) -> None:
    """Soft delete; the row stays for billing history."""
    generation = await get_generation(db, account_id, generation_id)
    generation.deleted_at = utcnow()
    await db.commit()


async def list_generations(
    db: AsyncSession,
    account_id: str,
    *,
    tool_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Generation]:
    query = select(Generation).where(Generation.user_id == account_id, Generation.deleted_at.is_(None))
    if tool_name:
        query = query.where(Generation.tool_name == tool_name)
    if status:
        query = query.where(Generation.status == status)
    result = await db.execute(
        query.order_by(Generation.created_at.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 100), 1))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_generation_stats(db: AsyncSession, account_id: Optional[str] = None) -> Dict[str, int]:
    query = select(
        Generation.status,
        func.count(Generation.id),
        func.coalesce(func.sum(Generation.credits_charged), 0),
    ).group_by(Generation.status)
    if account_id:
        query = query.where(Generation.user_id == account_id)
    result = await db.execute(query)

    stats = {"total": 0, "completed": 0, "failed": 0, "pending": 0, "total_credits_used": 0}
    for status, count, credits in result.all():
        stats["total"] += int(count)
        if status in IN_PROGRESS_STATUSES:
            stats["pending"] += int(count)
        elif status in ("completed", "failed"):
            stats[status] += int(count)
        stats["total_credits_used"] += int(credits or 0)
    return stats


def serialize_generation(generation: Generation) -> Dict[str, Any]:
    return {
        "id": generation.id,
        "tool_name": generation.tool_name,
        "status": generation.status,
        "model": generation.model,
        "content": generation.result_text if generation.status == "completed" else None,
        "settings": generation.settings_json,
        "credits_charged": generation.credits_charged,
        "tokens_used": generation.total_tokens or 0,
        "generation_time_ms": generation.processing_ms or 0,
        "error_message": generation.error_message,
        "retry_of_id": generation.retry_of_id,
        "cached_from_id": generation.cached_from_id,
        "user_rating": generation.user_rating,
        "created_at": generation.created_at.isoformat() if generation.created_at else None,
        "completed_at": generation.completed_at.isoformat() if generation.completed_at else None,
    }


async def recover_stalled_generations(
    max_age_minutes: Optional[int] = None,
    session_maker: async_sessionmaker = async_session_maker,
) -> int:
    """Fail in-progress generations orphaned by a restart. They were never debited."""
    minutes = max(int(max_age_minutes or settings.STALLED_GENERATION_MINUTES), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    async with session_maker() as db:
        result = await db.execute(
            update(Generation)
            .where(Generation.status.in_(IN_PROGRESS_STATUSES), Generation.created_at < cutoff)
            .values(status="failed", error_message=INTERRUPTED_MESSAGE, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)
