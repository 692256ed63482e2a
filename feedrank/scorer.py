from __future__ import annotations

import json
import logging
import re
from typing import Optional

from feedrank.constants import (
    NEWSWORTHINESS_BATCH_SIZE,
    NEWSWORTHINESS_FALLBACK_REASON,
    NEWSWORTHINESS_MAX,
    NEWSWORTHINESS_MAX_AGE_SECONDS,
    NEWSWORTHINESS_MIN,
    NEWSWORTHINESS_NEUTRAL,
    NEWSWORTHINESS_SUMMARY_MAX_CHARS,
)
from feedrank.errors import ProviderError
from feedrank.models import ScoreResult, ScoringResult
from feedrank.ollama import TextGenerator
from feedrank.store import Store

logger = logging.getLogger(__name__)

NEWSWORTHINESS_PROMPT = """Rate the newsworthiness of this article on a scale of 1 to 10, where:
- 1-3: routine, niche, or filler content
- 4-6: moderately interesting, relevant to some audiences
- 7-8: significant news, broad interest
- 9-10: major breaking news, historic event

Article title: {title}
Article summary: {summary}

Respond with ONLY a JSON object like: {{"score": 7, "reason": "brief explanation"}}
Do not include any other text."""

_INT_TOKEN = re.compile(r"\b(\d+)\b")


def build_prompt(title: str | None, description: str | None) -> str:
    summary = (description or "")[:NEWSWORTHINESS_SUMMARY_MAX_CHARS]
    return NEWSWORTHINESS_PROMPT.format(
        title=title or "(no title)",
        summary=summary or "(no summary)",
    )


def _strip_code_fence(src: str) -> str:
    cleaned = src.strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.splitlines()
    if lines and lines[0].strip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def _json_objects(src: str):
    """Yield each balanced top-level ``{...}`` substring in order."""
    start = src.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escape = False
        end = -1
        for idx in range(start, len(src)):
            ch = src[idx]
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = idx
                    break
        if end == -1:
            return
        yield src[start : end + 1]
        start = src.find("{", end + 1)


def _in_range(value: float) -> bool:
    return NEWSWORTHINESS_MIN <= value <= NEWSWORTHINESS_MAX


def parse_score_response(text: str | None) -> Optional[ScoreResult]:
    """Parse an LLM rating: JSON ``{"score", "reason"}`` first, then the first bare integer."""
    if not text:
        return None
    clean = _strip_code_fence(text)

    for candidate in _json_objects(clean):
        if '"score"' not in candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            logger.debug(f"JSON decode failed, trying fallback: {e}")
            continue
        if not isinstance(data, dict):
            continue
        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float, str)):
            continue
        try:
            score = float(score)
        except (ValueError, OverflowError):
            continue
        if not _in_range(score):
            continue
        reason = data.get("reason")
        return ScoreResult(score, reason if isinstance(reason, str) else "")

    match = _INT_TOKEN.search(clean)
    if match:
        value = int(match.group(1))
        if _in_range(value):
            return ScoreResult(float(value), "")
    return None


class NewsworthinessScorer:
    def __init__(
        self,
        store: Store,
        generator: TextGenerator,
        batch_size: int = NEWSWORTHINESS_BATCH_SIZE,
        max_age: float = NEWSWORTHINESS_MAX_AGE_SECONDS,
    ) -> None:
        self.store = store
        self.generator = generator
        self.batch_size = batch_size
        self.max_age = max_age

    async def score_item(self, item_id: int, title: str, description: str) -> ScoreResult:
        try:
            response = await self.generator.generate(build_prompt(title, description))
        except ProviderError as e:
            logger.debug("Generation failed for item %d: %s", item_id, e)
            response = None
        result = parse_score_response(response)
        if result is None:
            result = ScoreResult(float(NEWSWORTHINESS_NEUTRAL), NEWSWORTHINESS_FALLBACK_REASON)
        self.store.set_newsworthiness_score(item_id, result.score, result.reason)
        return result

    async def run(self) -> ScoringResult:
        """Score up to ``batch_size`` recent unscored items; every attempted item gets a score."""
        if not await self.generator.is_available():
            logger.debug("Text generator unavailable, skipping newsworthiness scoring")
            return ScoringResult()

        candidates = self.store.get_items_without_newsworthiness_score(self.max_age, self.batch_size)
        scored = 0
        for item_id, title, description in candidates:
            result = await self.score_item(item_id, title, description)
            logger.debug("Scored item %d: %.0f (%s)", item_id, result.score, result.reason)
            scored += 1
        if scored:
            logger.info("Newsworthiness scored %d items", scored)
        return ScoringResult(scored=scored)
