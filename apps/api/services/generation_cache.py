"""Exact-match generation cache keyed by a content fingerprint."""

from __future__ import annotations

import hashlib
import json
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import Generation


class GenerationSettings(BaseModel):
    """Complete, fixed set of knobs that shape a generation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    emotion: str = "emotional"
    tone: str = "casual"
    language: str = "english"
    region: str = "global"
    target_audience: str = ""
    creator_notes: str = ""


def compute_fingerprint(source_text: str, settings: GenerationSettings, tool_name: str) -> str:
    """SHA-256 over the canonical JSON of transcript, every setting and the tool."""
    payload = {
        "source_text": source_text,
        "settings": settings.model_dump(),
        "tool_name": tool_name,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def lookup(db: AsyncSession, fingerprint: str, tool_name: str) -> Optional[Generation]:
    """Newest completed generation for the pair; unfinished or failed rows never hit."""
    result = await db.execute(
        select(Generation)
        .where(
            Generation.fingerprint == fingerprint,
            Generation.tool_name == tool_name,
            Generation.status == "completed",
            Generation.deleted_at.is_(None),
        )
        .order_by(Generation.completed_at.desc(), Generation.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
