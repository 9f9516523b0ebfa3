"""LLM judgments used by the connection pipeline.

Two stages, with opposite failure policies:

- ``check_titles_relevance`` is the cheap title pre-filter. Anything it cannot
  read (bad JSON, wrong length, provider error) counts as "possibly related",
  because a candidate dropped here never reaches the validator.
- ``validate_connection`` is the final full-text gate. Anything other than a
  clean "true" (including provider errors) counts as "not connected".
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence

from .llm_providers import Message, ModelGateway
from .models import ConnectionStrength, ProviderProfile
from .rate_limit import RateLimiter

log = logging.getLogger(__name__)


# =============================================================================
# Title Pre-Filter
# =============================================================================

TITLE_FILTER_SYSTEM_PROMPT = """You are pre-filtering notes based on their titles to determine if they might be related.
Your task is to compare the reference title against a list of other titles.
Return ONLY a JSON array of boolean values, one for each title in the list.

Return true for titles that:
1. Share similar topics or concepts
2. Are part of the same series
3. Use similar terminology
4. One might provide context for the other
5. Have similar structural patterns (e.g. both about calculations, rules, or methods)

Return false for titles that:
- Are completely different topics
- One is technical/meta and other is content
- Have no conceptual overlap
- Are clearly unrelated domains

Example response format: [true, false, true]

Example "true" pairs:
- "Investment Strategy" & "Portfolio Allocation"
- "Rule of 72" & "Compound Interest Formula"
- "Meeting Notes 2024" & "Meeting Action Items"
- "Financial Terms" & "Investment Glossary"

Example "false" pairs:
- "Investment Strategy" & "Plugin Settings"
- "Meeting Notes" & "CSS Styles"
- "Rule of 72" & "Keyboard Shortcuts"
- "Financial Terms" & "System Requirements\""""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
    return text.strip()


def parse_bool_array(text: str, expected_length: int) -> list[bool] | None:
    """Parse a JSON array of booleans of exactly ``expected_length`` items.

    Returns:
        The parsed list, or None if the text is not such an array.
    """
    try:
        parsed = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError:
        return None

    if not isinstance(parsed, list) or len(parsed) != expected_length:
        return None
    if not all(isinstance(item, bool) for item in parsed):
        return None
    return parsed


def build_title_filter_messages(
    reference_title: str,
    candidate_titles: Sequence[str],
    concepts: Mapping[str, str] | None = None,
) -> list[Message]:
    lines = []
    for i, title in enumerate(candidate_titles):
        line = f'{i + 1}. "{title}"'
        summary = concepts.get(title) if concepts else None
        if summary:
            line += f" (concepts: {summary})"
        lines.append(line)

    user = f"""Reference Title: "{reference_title}"

Compare against these titles:
{chr(10).join(lines)}

Return a JSON array of booleans indicating which titles might be related to the reference title."""

    return [
        {"role": "system", "content": TITLE_FILTER_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


async def check_titles_relevance(
    gateway: ModelGateway,
    limiter: RateLimiter,
    profile: ProviderProfile,
    reference_title: str,
    candidate_titles: Sequence[str],
    concepts: Mapping[str, str] | None = None,
) -> list[bool]:
    """Judge which candidate titles might relate to the reference title.

    One model call for the whole list. The result always has the same length
    and order as ``candidate_titles``; when the response cannot be used every
    entry is True (fail open).

    Args:
        gateway: Model gateway to call.
        limiter: Shared rate limiter; a slot is acquired before the call.
        profile: Provider profile to use.
        reference_title: Title of the source note.
        candidate_titles: Titles to judge (one pre-filter chunk).
        concepts: Optional title -> concept summary hints from the concepts index.
    """
    if not candidate_titles:
        return []

    fail_open = [True] * len(candidate_titles)
    messages = build_title_filter_messages(reference_title, candidate_titles, concepts)

    try:
        await limiter.wait_for_slot()
        completion = await gateway.complete(messages, profile)
    except Exception as e:
        log.warning("Title check failed, keeping all %d candidates: %s", len(candidate_titles), e)
        return fail_open

    result = parse_bool_array(completion.text, len(candidate_titles))
    if result is None:
        log.warning("Failed to parse title check response, keeping all candidates")
        log.debug("Unparseable title check response: %r", completion.text)
        return fail_open

    return result


# =============================================================================
# Connection Validator
# =============================================================================

VALIDATOR_BASE_PROMPT = """You are validating if two notes have a meaningful connection.
A valid connection should share related concepts, ideas, or purpose.

Return ONLY "true" or "false"."""

STRENGTH_RULES: dict[str, str] = {
    "strict": """
Return "true" ONLY if the notes:
1. Share VERY closely related concepts or topics
2. Are clearly part of the same project or workflow
3. Have direct references to each other's topics
4. Would be frequently used together
5. Form a clear logical sequence

Return "false" if:
- They only share general themes
- The connection is indirect
- They are only loosely related
- The overlap is minimal
- You have any doubt about the connection""",
    "balanced": """
Return "true" if the notes:
1. Discuss related concepts
2. Share similar practical advice or methods
3. Build on similar principles or rules
4. Reference related sources or ideas
5. Would provide valuable context for each other

Return "false" if:
- They only share superficial similarities
- They only contain similar numbers without context
- They only have matching tags
- The connection is extremely vague
- They are completely different topics""",
    "relaxed": """
Return "true" if the notes:
1. Share any related concepts or ideas
2. Could be part of a broader theme
3. Might provide useful context
4. Have overlapping subject areas
5. Could be interesting to cross-reference

Return "false" only if:
- They are completely unrelated
- They have no conceptual overlap
- They serve entirely different purposes
- The potential connection is meaningless""",
}


def build_validator_system_prompt(
    strength: ConnectionStrength,
    special_instructions: str = "",
) -> str:
    prompt = VALIDATOR_BASE_PROMPT + STRENGTH_RULES[strength]
    if special_instructions.strip():
        prompt += f"\n\nAdditional instructions:\n{special_instructions}"
    return prompt


def build_validator_messages(
    source_body: str,
    candidate_body: str,
    strength: ConnectionStrength,
    special_instructions: str = "",
) -> list[Message]:
    user = f"""Note 1:
{source_body}

Note 2:
{candidate_body}

Are these notes meaningfully connected? Reply only with "true" or "false"."""

    return [
        {"role": "system", "content": build_validator_system_prompt(strength, special_instructions)},
        {"role": "user", "content": user},
    ]


async def validate_connection(
    gateway: ModelGateway,
    limiter: RateLimiter,
    profile: ProviderProfile,
    source_body: str,
    candidate_body: str,
    strength: ConnectionStrength = "balanced",
    special_instructions: str = "",
) -> bool:
    """Ask the model whether two notes are meaningfully connected.

    Only a response equal to "true" (trimmed, case-insensitive) is positive.
    Errors of any kind are logged and count as False; nothing propagates.
    """
    messages = build_validator_messages(source_body, candidate_body, strength, special_instructions)

    try:
        await limiter.wait_for_slot()
        completion = await gateway.complete(messages, profile, binary=True)
    except Exception as e:
        log.warning("Error validating connection: %s", e)
        return False

    return completion.text.strip().lower() == "true"
