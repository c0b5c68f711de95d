"""Tool catalogue and hot-reloadable per-tool configuration."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.tool_config import ToolConfig
from services.errors import ToolDisabled, UnknownTool


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    label: str
    description: str
    category: str


TOOLS: List[ToolDefinition] = [
    ToolDefinition("thumbnail", "Thumbnail Text Copy", "Eye-catching text for video thumbnails", "generation"),
    ToolDefinition("seo-title", "SEO Title", "Search-optimized titles that rank", "generation"),
    ToolDefinition("youtube", "YouTube Content", "Optimized title & description", "platform"),
    ToolDefinition("facebook", "Facebook Post", "Engagement-driven content", "platform"),
    ToolDefinition("twitter", "Twitter/X Content", "Viral-ready tweets", "platform"),
    ToolDefinition("instagram", "Instagram Reels", "Caption and hashtags for reels", "platform"),
    ToolDefinition("blog", "Blog Article", "Long-form article from the transcript", "platform"),
    ToolDefinition("short-desc", "Short Description", "One-paragraph summary", "description"),
    ToolDefinition("long-desc", "Long Description", "Detailed description with chapters", "description"),
    ToolDefinition("ad-copy", "Ad Copy", "Conversion-focused ad variations", "marketing"),
    ToolDefinition("hooks", "Viral Hooks", "Opening lines that stop the scroll", "marketing"),
    ToolDefinition("more-same", "More Like This", "Ideas in the same direction", "growth"),
    ToolDefinition("more-different", "Something Different", "Ideas in a new direction", "growth"),
    ToolDefinition("improvements", "Improvements", "What to fix in the next upload", "growth"),
    ToolDefinition("competitor", "Competitor Insight", "Gaps and differentiation ideas", "growth"),
]

TOOLS_BY_NAME: Dict[str, ToolDefinition] = {tool.name: tool for tool in TOOLS}

# Fields an admin may override through ToolConfig.
CONFIG_FIELDS = ("credit_cost", "hourly_limit", "daily_limit", "model", "is_enabled")


@dataclass(frozen=True)
class ResolvedToolConfig:
    tool_name: str
    label: str
    credit_cost: int
    hourly_limit: int
    daily_limit: int
    model: str
    is_enabled: bool

    def snapshot(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if key in CONFIG_FIELDS}


def get_tool_definition(tool_name: str) -> ToolDefinition:
    tool = TOOLS_BY_NAME.get(str(tool_name or "").strip().lower())
    if tool is None:
        raise UnknownTool(f"Unknown tool: {tool_name}")
    return tool


def default_credit_cost(tool_name: str) -> int:
    costs = settings.TOOL_CREDIT_COSTS or {}
    return max(int(costs.get(tool_name, settings.DEFAULT_TOOL_CREDIT_COST)), 0)


def _resolve(tool: ToolDefinition, row: Optional[ToolConfig]) -> ResolvedToolConfig:
    def pick(column: str, fallback: Any) -> Any:
        value = getattr(row, column, None) if row is not None else None
        return fallback if value is None else value

    return ResolvedToolConfig(
        tool_name=tool.name,
        label=tool.label,
        credit_cost=int(pick("credit_cost", default_credit_cost(tool.name))),
        hourly_limit=int(pick("hourly_limit", settings.DEFAULT_HOURLY_LIMIT)),
        daily_limit=int(pick("daily_limit", settings.DEFAULT_DAILY_LIMIT)),
        model=str(pick("model", settings.GENERATION_MODEL)),
        is_enabled=bool(pick("is_enabled", True)),
    )


async def get_tool_config(db: AsyncSession, tool_name: str) -> ResolvedToolConfig:
    """Resolve the live configuration for a tool. Read on every request so admin edits apply at once."""
    tool = get_tool_definition(tool_name)
    result = await db.execute(select(ToolConfig).where(ToolConfig.tool_name == tool.name))
    return _resolve(tool, result.scalar_one_or_none())


async def require_enabled_tool(db: AsyncSession, tool_name: str) -> ResolvedToolConfig:
    config = await get_tool_config(db, tool_name)
    if not config.is_enabled:
        raise ToolDisabled(f"Tool {config.tool_name} is temporarily disabled.")
    return config


async def list_tool_configs(db: AsyncSession) -> List[ResolvedToolConfig]:
    result = await db.execute(select(ToolConfig))
    rows = {row.tool_name: row for row in result.scalars().all()}
    return [_resolve(tool, rows.get(tool.name)) for tool in TOOLS]


def serialize_tool(config: ResolvedToolConfig) -> Dict[str, Any]:
    tool = TOOLS_BY_NAME[config.tool_name]
    return {
        "name": config.tool_name,
        "label": config.label,
        "description": tool.description,
        "category": tool.category,
        "credit_cost": config.credit_cost,
        "hourly_limit": config.hourly_limit,
        "daily_limit": config.daily_limit,
        "model": config.model,
        "is_enabled": config.is_enabled,
    }
