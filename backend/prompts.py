"""Prompt builders for the completion service. Each returns (system_prompt, user_prompt)."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

_JSON_ONLY = "Return strict JSON only, with no prose and no markdown fences."

ENRICHMENT_SYSTEM = (
    "You annotate journal entries, chat messages and exercise notes for a "
    "coaching assistant's memory. " + _JSON_ONLY
)

RELATION_SYSTEM = (
    "You decide whether two memory records from the same person are related. " + _JSON_ONLY
)

SYNTHESIS_SYSTEM = (
    "You condense retrieved memory records into short context notes that another "
    "assistant reads before replying. Be warm, brief and never clinical. " + _JSON_ONLY
)

WEEKLY_SUMMARY_SYSTEM = (
    "You write a compassionate, strengths-based weekly recap of someone's "
    "wellbeing activity. " + _JSON_ONLY
)

NUDGE_SYSTEM = (
    "You suggest one small, supportive next step inside a wellbeing app. "
    "Never mention crisis, trauma or self-harm. " + _JSON_ONLY
)


def enrichment_prompt(content: str, source_feature: str, block_type: str) -> Tuple[str, str]:
    user = (
        "Return an object with keys:\n"
        '  "sentiment": one of "positive", "neutral", "negative", "mixed"\n'
        '  "emotional_tone": one or two words, e.g. "anxious", "hopeful"\n'
        '  "themes": up to 5 abstract topics, e.g. "self-worth", "career change"\n'
        '  "tags": up to 8 concrete keywords\n'
        '  "crisis_flag": true if the text suggests self-harm, suicide, abuse or acute crisis\n'
        '  "sensitivity_flag": true if the text is emotionally vulnerable or trauma related\n'
        '  "relevance_score": 0.0-1.0, how useful this is to recall later\n'
        '  "summary": one or two sentences\n\n'
        f"Source feature: {source_feature}\n"
        f"Record type: {block_type}\n"
        "Text:\n"
        f"{content}"
    )
    return ENRICHMENT_SYSTEM, user


def relation_prompt(block_a: Dict[str, Any], block_b: Dict[str, Any]) -> Tuple[str, str]:
    def _describe(block: Dict[str, Any]) -> str:
        text = block.get("summary") or (block.get("content") or "")[:500]
        return f"{text}\n(type: {block.get('block_type')}, source: {block.get('source_feature')})"

    user = (
        "Record A:\n"
        f"{_describe(block_a)}\n\n"
        "Record B:\n"
        f"{_describe(block_b)}\n\n"
        "Return an object with keys:\n"
        '  "is_related": true or false\n'
        '  "relation_type": one of "supports", "addresses", "follows_up_on", '
        '"derived_from", "connected_to", "contradicts", "reinforces"\n'
        '  "strength": 0.0-1.0\n'
        '  "explanation": one short sentence\n\n'
        "supports: B enables A. addresses: B works on an issue raised in A. "
        "follows_up_on: B continues A. derived_from: B was created from A. "
        "connected_to: general thematic link. contradicts: B challenges A. "
        "reinforces: B strengthens A."
    )
    return RELATION_SYSTEM, user


def format_synthesis_blocks(blocks: Sequence[Tuple[Dict[str, Any], float]]) -> str:
    lines: List[str] = []
    for index, (block, similarity) in enumerate(blocks, start=1):
        body = block.get("summary") or block.get("content") or ""
        lines.append(
            f"Block {index} ({block.get('block_type')}, similarity: {similarity:.2f}):\n{body}"
        )
    return "\n\n".join(lines)


def synthesis_prompt(
    blocks: Sequence[Tuple[Dict[str, Any], float]],
    *,
    query: str,
    target_feature: str,
    mood: str = "unknown",
) -> Tuple[str, str]:
    user = (
        f"The notes will be used in the {target_feature} feature.\n"
        f"Current topic: {query}\n"
        f"Current mood: {mood}\n\n"
        "Retrieved records:\n"
        f"{format_synthesis_blocks(blocks)}\n\n"
        "Return an object with keys:\n"
        '  "context_bullets": 2-4 short natural-language notes\n'
        '  "suggested_tone": one of "calming", "supportive", "encouraging", "reflective"\n'
        '  "key_themes": up to 4 themes'
    )
    return SYNTHESIS_SYSTEM, user


def weekly_summary_prompt(
    blocks: Sequence[Dict[str, Any]], mood_values: Sequence[int]
) -> Tuple[str, str]:
    activity = "\n".join(
        f"- [{block.get('source_feature')}/{block.get('block_type')}] "
        f"{block.get('summary') or (block.get('content') or '')[:200]}"
        for block in blocks
    )
    moods = ", ".join(str(value) for value in mood_values) or "no check-ins"
    user = (
        "Activity this week:\n"
        f"{activity}\n\n"
        f"Mood check-ins (1-6, oldest first): {moods}\n\n"
        "Return an object with keys:\n"
        '  "title", "summary" (2-3 sentences), "key_themes" (up to 3),\n'
        '  "highlights" (1-3), "reflections" (1-2),\n'
        '  "mood_trend": one of "improving", "stable", "fluctuating", "declining",\n'
        '  "encouragement": 1-2 sentences for the week ahead'
    )
    return WEEKLY_SUMMARY_SYSTEM, user


def nudge_prompt(context: Dict[str, Any], snippets: Sequence[str]) -> Tuple[str, str]:
    snippet_lines = "\n".join(
        f"{index}. {snippet}" for index, snippet in enumerate(snippets, start=1)
    ) or "none"
    user = (
        f"Themes: {', '.join(context.get('themes') or []) or 'none'}\n"
        f"Risks: {', '.join(context.get('risks') or []) or 'none'}\n"
        f"Active goal: {context.get('active_goal') or 'none'}\n"
        f"Mood trend: {context.get('mood_trend')} (avg {context.get('mood_avg')})\n"
        f"Streak: {context.get('streak_days', 0)} days\n"
        "Memory snippets:\n"
        f"{snippet_lines}\n\n"
        "Return exactly one nudge as an object with keys:\n"
        '  "kind": one of "suggest_tool", "journal_prompt", "goal_reminder", "cross_feature_insight"\n'
        '  "target_surface": one of "home", "chat", "journal", "goals", "tools"\n'
        '  "title": at most 40 characters\n'
        '  "message": at most 150 characters, warm and actionable\n'
        '  "cta_label": at most 20 characters\n'
        '  "cta_action": {"target": "feature/path", "data": {}}\n'
        "Keep it to one small, doable step."
    )
    return NUDGE_SYSTEM, user
