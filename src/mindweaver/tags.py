"""Tag suggestions restricted to a closed vocabulary.

The model is shown the vocabulary and asked for a comma-separated choice.
Its answer is intersected with the vocabulary by exact string match, so a
tag the model invents, or writes without its leading ``#``, is dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .config import TAG_MAX_TOKENS
from .llm_providers import Message, ModelGateway
from .models import ProviderProfile
from .rate_limit import RateLimiter

log = logging.getLogger(__name__)


def build_vocabulary(
    vault_tags: Iterable[str],
    custom_tags: Iterable[str] = (),
    custom_only: bool = False,
) -> list[str]:
    """Tags the model may choose from, sorted.

    Args:
        vault_tags: Tags observed anywhere in the vault.
        custom_tags: User-defined tags from the settings file.
        custom_only: Ignore vault tags and offer only the custom ones.
    """
    vocabulary = set(t for t in custom_tags if t)
    if not custom_only:
        vocabulary.update(t for t in vault_tags if t)
    return sorted(vocabulary)


def build_tag_messages(body: str, vocabulary: Sequence[str]) -> list[Message]:
    system = f"""You assign tags to notes in a personal knowledge base.
Choose ONLY from this list of existing tags:
{", ".join(vocabulary)}

Pick the tags that describe the main topics of the note. Do not invent new tags.
Return the chosen tags exactly as written above, separated by commas, and nothing else.
If no tag fits, return an empty response."""

    return [
        {"role": "system", "content": system},
        {"role": "user", "content": f"Note:\n{body}"},
    ]


def parse_tag_response(
    text: str,
    vocabulary: Iterable[str],
    existing_tags: Iterable[str] = (),
) -> list[str]:
    """Keep vocabulary tags from a comma-separated answer, in the model's order.

    Tags outside the vocabulary and tags the note already has are discarded;
    repeats are kept once.
    """
    allowed = set(vocabulary)
    existing = set(existing_tags)

    result: list[str] = []
    for raw in text.split(","):
        tag = raw.strip()
        if not tag or tag not in allowed or tag in existing or tag in result:
            continue
        result.append(tag)
    return result


async def weave_tags(
    gateway: ModelGateway,
    limiter: RateLimiter,
    profile: ProviderProfile,
    body: str,
    vocabulary: Sequence[str],
    existing_tags: Iterable[str] = (),
) -> list[str]:
    """Suggest vocabulary tags for a note body.

    Returns an empty list without calling the model when the vocabulary is
    empty.

    Raises:
        ProviderError: If the model call fails.
    """
    if not vocabulary:
        return []

    await limiter.wait_for_slot()
    completion = await gateway.complete(
        build_tag_messages(body, vocabulary),
        profile,
        max_tokens=TAG_MAX_TOKENS,
    )

    tags = parse_tag_response(completion.text, vocabulary, existing_tags)
    log.debug("Tag response %r -> %s", completion.text, tags)
    return tags
