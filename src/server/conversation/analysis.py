from __future__ import annotations

import json
import logging
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from src.llms.llm import get_llm_by_type

from .store import SQLiteConversationStore

logger = logging.getLogger(__name__)

MIN_ANGER = 1
MAX_ANGER = 5

_SYSTEM_PROMPT = "\n".join(
    [
        "You are a strict JSON-only analyzer. Analyze the provided message for anger on a 1-5 scale.",
        "Rules:",
        '- Output ONLY a single JSON object with one key: "anger".',
        "- The value must be an integer from 1 (no anger) to 5 (very angry).",
        "- No prose or explanation, only JSON.",
    ]
)


async def analyze_anger(content: str) -> dict[str, int]:
    """Score a user message for anger, returning ``{"anger": 1..5}``."""
    llm = get_llm_by_type("analysis")
    ai_message = await llm.ainvoke(
        [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=f"Message:\n{content}\nRespond with JSON only."),
        ]
    )
    raw = ai_message.content if hasattr(ai_message, "content") else str(ai_message)
    return {"anger": parse_anger(raw if isinstance(raw, str) else str(raw))}


def parse_anger(raw: str) -> int:
    try:
        parsed: Any = json.loads(raw)
    except (TypeError, ValueError):
        return MIN_ANGER
    value = parsed.get("anger", MIN_ANGER) if isinstance(parsed, dict) else MIN_ANGER
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return MIN_ANGER
    return max(MIN_ANGER, min(MAX_ANGER, score))


async def annotate_message(store: SQLiteConversationStore, message_id: str, content: str) -> Optional[dict[str, int]]:
    """Run anger analysis and persist it on the message; failures are logged, never raised."""
    try:
        analysis = await analyze_anger(content)
    except Exception as exc:  # noqa: BLE001 - analysis must not fail the chat exchange
        logger.warning("Anger analysis failed for message %s: %s", message_id, exc)
        return None

    await store.update_message_analysis(message_id, analysis)
    logger.debug("Stored analysis %s for message %s", analysis, message_id)
    return analysis
