"""Tools that talk to the user rather than the filesystem."""
from __future__ import annotations

import logging
from typing import Any

from ..tool_registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)


async def share_your_reasoning(args: dict[str, Any], ctx: ToolContext) -> str:
    reasoning = str(args.get("reasoning") or "").strip()
    next_steps = args.get("next_steps")
    if isinstance(next_steps, list):
        next_steps = "\n".join(f"- {step}" for step in next_steps)
    await ctx.emit(
        "reasoning",
        call_id=ctx.call_id,
        reasoning=reasoning,
        next_steps=next_steps or "",
    )
    logger.debug("Agent %s shared reasoning (%d chars)", ctx.agent.name, len(reasoning))
    return "Reasoning shared."


AGENT_TOOLS = [
    ToolSpec(
        name="share_your_reasoning",
        description=(
            "Explain your current reasoning and planned next steps to the "
            "user. Use it before larger changes."
        ),
        handler=share_your_reasoning,
        parameters={
            "type": "object",
            "properties": {
                "reasoning": {"type": "string"},
                "next_steps": {
                    "anyOf": [
                        {"type": "string"},
                        {"type": "array", "items": {"type": "string"}},
                    ],
                },
            },
            "required": ["reasoning"],
        },
    ),
]
