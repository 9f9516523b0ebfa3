"""Render validated links as a "Related notes" section.

Four layouts are supported:

    comma     [[A]], [[B]]
    bullet    - [[A]]
              - [[B]]
    numbered  1. [[A]]
              2. [[B]]
    line      [[A]]
              [[B]]

Output is ``header + "\\n" + body + "\\n"``, or ``body + "\\n"`` when the
header is disabled. Links are de-duplicated and sorted before rendering.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from .config import DEFAULT_HEADER_LEVEL, DEFAULT_HEADER_TEXT
from .models import LinkFormat

# [[target]], [[target|alias]], [[target#heading]]
WIKILINK_PATTERN = re.compile(r"\[\[([^\[\]]+?)\]\]")


def normalize_link(raw: str) -> str:
    """Reduce a link or note reference to its canonical target.

    Alias (``|``) and heading (``#``) suffixes are only stripped from
    ``[[...]]`` tokens; a bare note title is kept whole, since titles such
    as "C# basics" may contain those characters.

    Examples:
        >>> normalize_link("[[Compound interest|CI]]")
        'Compound interest'
        >>> normalize_link("finance/Compound interest.md")
        'Compound interest'
        >>> normalize_link("C# basics")
        'C# basics'
    """
    target = raw.strip()
    if target.startswith("[[") and target.endswith("]]"):
        target = target[2:-2].split("|", 1)[0].split("#", 1)[0].strip()
    target = target.replace("\\", "/").rstrip("/")
    if "/" in target:
        target = target.rsplit("/", 1)[1]
    if target.endswith(".md"):
        target = target[:-3]
    return target.strip()


def unique_sorted(links: Iterable[str]) -> list[str]:
    """Canonical targets, each exactly once, in lexicographic order."""
    return sorted({target for target in (normalize_link(link) for link in links) if target})


def render_header(header_text: str = DEFAULT_HEADER_TEXT, header_level: int = DEFAULT_HEADER_LEVEL) -> str:
    return f"{'#' * header_level} {header_text}"


def format_links(
    links: Iterable[str],
    fmt: LinkFormat = "comma",
    show_header: bool = True,
    header_text: str = DEFAULT_HEADER_TEXT,
    header_level: int = DEFAULT_HEADER_LEVEL,
) -> str:
    """Format links in one of the supported layouts.

    Returns an empty string when there are no links; callers treat that as
    "nothing to write".

    Raises:
        ValueError: If ``fmt`` is not a known layout.
    """
    targets = unique_sorted(links)
    if not targets:
        return ""

    tokens = [f"[[{target}]]" for target in targets]

    if fmt == "comma":
        body = ", ".join(tokens)
    elif fmt == "bullet":
        body = "\n".join(f"- {token}" for token in tokens)
    elif fmt == "numbered":
        body = "\n".join(f"{i}. {token}" for i, token in enumerate(tokens, start=1))
    elif fmt == "line":
        body = "\n".join(tokens)
    else:
        raise ValueError(f"Unknown link format: {fmt}")

    if show_header:
        return f"{render_header(header_text, header_level)}\n{body}\n"
    return f"{body}\n"


def extract_links(text: str) -> list[str]:
    """Canonical link targets found in text, in order of first appearance."""
    seen: dict[str, None] = {}
    for match in WIKILINK_PATTERN.finditer(text):
        target = normalize_link(match.group(0))
        if target:
            seen.setdefault(target, None)
    return list(seen)
