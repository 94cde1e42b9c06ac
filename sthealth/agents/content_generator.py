"""Content Generator — nudge text via Claude, with deterministic fallbacks.

Turns a (type, framework, profile, behavior) tuple into one short sentence.
Every failure path (missing key, timeout, API error, empty or malformed
output) resolves to the fixed fallback sentence for the nudge type, so
``generate`` never raises and never returns an empty string.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sthealth.config.settings import (
    ANTHROPIC_API_KEY,
    NUDGE_CONTENT_MAX_TOKENS,
    NUDGE_CONTENT_MODEL,
    NUDGE_CONTENT_TIMEOUT_SECONDS,
)
from sthealth.models.nudge import NudgeType, PsychologicalFramework
from sthealth.models.profile import PsychologicalProfile, RecentBehaviorAnalysis

logger = logging.getLogger(__name__)

Completion = Callable[[str, str], Awaitable[str]]


class ContentGenerationError(RuntimeError):
    """Generation produced nothing usable. Never escapes ContentGenerator.generate."""


# ── Fallbacks ────────────────────────────────────────────────────────────

FALLBACK_NUDGES: dict[NudgeType, str] = {
    NudgeType.PATTERN_INTERRUPTION: "Notice the story you're telling yourself right now...",
    NudgeType.VALUES_ALIGNMENT: "What would your most authentic self do in this moment?",
    NudgeType.EMOTIONAL_GRANULARITY: "That feeling has layers. What's beneath the surface?",
    NudgeType.GROWTH_OPPORTUNITY: "You're on the edge of understanding something important.",
    NudgeType.GRATITUDE_STRENGTHS: "Your growth over the past month has been remarkable.",
}


def fallback_nudge(nudge_type: NudgeType) -> str:
    return FALLBACK_NUDGES[nudge_type]


# ── Prompts ──────────────────────────────────────────────────────────────

BASE_SYSTEM_PROMPT = (
    "You are an emotionally intelligent nudge generator. Create a gentle, "
    "insightful micro-intervention that primes subconscious reflection without "
    "demanding action. Use {framework} principles."
)

TYPE_FOCUS: dict[NudgeType, str] = {
    NudgeType.PATTERN_INTERRUPTION:
        "Focus on gently interrupting thought patterns and offering new perspectives.",
    NudgeType.VALUES_ALIGNMENT:
        "Focus on connecting actions to deeper values and authentic desires.",
    NudgeType.EMOTIONAL_GRANULARITY:
        "Focus on emotional nuance and helping distinguish between similar feelings.",
    NudgeType.GROWTH_OPPORTUNITY:
        "Focus on highlighting growth edges and expansion opportunities.",
    NudgeType.GRATITUDE_STRENGTHS:
        "Focus on recognizing existing strengths and moments of gratitude.",
}

LENGTH_INSTRUCTION = "Keep it under 60 characters."


def build_system_prompt(nudge_type: NudgeType, framework: PsychologicalFramework) -> str:
    base = BASE_SYSTEM_PROMPT.format(framework=framework.value)
    return f"{base} {TYPE_FOCUS[nudge_type]} {LENGTH_INSTRUCTION}"


def build_user_context(profile: PsychologicalProfile, behavior: RecentBehaviorAnalysis) -> str:
    polarity = "positive" if behavior.last_reflection_sentiment > 0 else "challenging"
    lines = [
        "User's current context:",
        f"- Primary reflection theme: {profile.top_pattern}",
        f"- Emotional state: {behavior.emotional_state}",
        f"- Recent sentiment: {polarity}",
        f"- Life chapter: {profile.current_life_narrative_chapter}",
        f"- Receptivity level: {behavior.receptivity_level:.2f}",
        "",
        "Generate a subtle, emotionally intelligent nudge that creates a gentle "
        "opening for insight.",
    ]
    return "\n".join(lines)


def clean_output(raw: Optional[str]) -> str:
    """Strip whitespace, markdown fences and wrapping quotes."""
    if not raw:
        return ""
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()
    for quote in ('"', "'", "“”"):
        opening, closing = quote[0], quote[-1]
        if len(text) >= 2 and text.startswith(opening) and text.endswith(closing):
            text = text[1:-1].strip()
    return text


# ── Claude API Caller ────────────────────────────────────────────────────


async def call_claude(system_prompt: str, user_prompt: str) -> str:
    """Call Claude via the Anthropic API. Raises on any failure."""
    import anthropic

    if not ANTHROPIC_API_KEY:
        raise ContentGenerationError("ANTHROPIC_API_KEY not configured")

    client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
    response = await client.messages.create(
        model=NUDGE_CONTENT_MODEL,
        max_tokens=NUDGE_CONTENT_MAX_TOKENS,
        system=system_prompt,
        messages=[{"role": "user", "content": user_prompt}],
    )
    if not response.content:
        raise ContentGenerationError("empty completion")
    return response.content[0].text


class ContentGenerator:
    """Adapter in front of the text-generation service."""

    def __init__(
        self,
        completion: Completion | None = None,
        timeout: float = NUDGE_CONTENT_TIMEOUT_SECONDS,
    ):
        self._completion = completion or call_claude
        self.timeout = timeout

    async def _attempt(self, system_prompt: str, user_prompt: str) -> str:
        raw = await asyncio.wait_for(self._completion(system_prompt, user_prompt), self.timeout)
        if not isinstance(raw, str):
            raise ContentGenerationError(f"malformed completion of type {type(raw).__name__}")
        text = clean_output(raw)
        if not text:
            raise ContentGenerationError("completion was empty after cleaning")
        return text

    async def generate(
        self,
        nudge_type: NudgeType,
        framework: PsychologicalFramework,
        profile: PsychologicalProfile,
        behavior: RecentBehaviorAnalysis,
    ) -> str:
        system_prompt = build_system_prompt(nudge_type, framework)
        user_prompt = build_user_context(profile, behavior)
        try:
            return await self._attempt(system_prompt, user_prompt)
        except asyncio.TimeoutError:
            logger.warning("Nudge generation timed out after %.1fs, using fallback", self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Nudge generation failed, using fallback: %s", exc)
        return fallback_nudge(nudge_type)
