"""Core business logic for mindweaver.

The two user actions ("find connections" and "weave tags") plus the concepts
reindex. Everything here talks to the host only through the ``Vault`` and
``OutputSink`` protocols, and to models only through a ``ModelGateway``
guarded by a shared ``RateLimiter``.

Calls are strictly sequential: one gateway call in flight at a time, each
preceded by a limiter wait.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from .concepts_index import ConceptsIndexer
from .config import TITLE_CHUNK_PAUSE_SECONDS, TITLE_CHUNK_SIZE, WeaverConfig
from .errors import ErrorCode, NoActiveDocument, NoEditor, WeaverError
from .formatter import format_links
from .llm import check_titles_relevance, validate_connection
from .llm_providers import ModelGateway, require_credentials, resolve_profile
from .models import (
    ConnectionResult,
    ConnectionState,
    Document,
    ProviderProfile,
    StatusKind,
    StatusMessage,
    TagResult,
)
from .rate_limit import RateLimiter, Sleep
from .tags import build_vocabulary, weave_tags
from .vault import (
    OutputSink,
    Vault,
    build_candidate_set,
    is_excluded,
    read_documents,
    title_for,
)

log = logging.getLogger(__name__)

StatusCallback = Callable[[StatusMessage], None]


def _notify(
    on_status: StatusCallback | None,
    kind: StatusKind,
    message: str,
    current: int | None = None,
    total: int | None = None,
) -> None:
    if on_status is not None:
        on_status(StatusMessage(kind=kind, message=message, current=current, total=total))


def _read_source(vault: Vault, source_path: str | None) -> Document:
    """Resolve and read the note an action was invoked on.

    Raises:
        NoActiveDocument: If no note was given or it does not exist.
        WeaverError: If the note cannot be read.
    """
    if not source_path:
        raise NoActiveDocument()

    resolved = vault.get_file(source_path)
    if resolved is None:
        raise NoActiveDocument(f"Note not found: {source_path}")

    try:
        body = vault.read(resolved)
    except (OSError, UnicodeDecodeError) as e:
        raise WeaverError(ErrorCode.FILE_READ_ERROR, f"Could not read {resolved}: {e}") from e

    return Document(id=resolved, title=title_for(resolved), body=body)


def _prepare(
    vault: Vault,
    source_path: str | None,
    config: WeaverConfig,
    sink: OutputSink | None,
) -> tuple[ProviderProfile, Document]:
    profile = resolve_profile(config)
    require_credentials(profile)
    source = _read_source(vault, source_path)
    if sink is None:
        raise NoEditor()
    return profile, source


# =============================================================================
# Find Connections
# =============================================================================


def _abort(
    result: ConnectionResult,
    error: WeaverError,
    on_status: StatusCallback | None,
) -> ConnectionResult:
    log.warning("Find connections aborted: %s", error.message)
    result.state = ConnectionState.ABORTED
    result.error = error.message
    result.error_code = error.code.value
    _notify(on_status, "error", error.message)
    return result


async def _concept_hints(
    indexer: ConceptsIndexer,
    vault: Vault,
    source: Document,
    candidate_paths: Sequence[str],
) -> dict[str, str]:
    """Refresh stale index entries and return title -> summary for candidates.

    Only notes whose entry is missing or expired are read. Index failures are
    logged and the hints built from whatever is cached.
    """
    stale = indexer.stale_ids([source.id, *candidate_paths])
    if stale:
        documents = [source] if source.id in stale else []
        documents += read_documents(vault, [path for path in stale if path != source.id])
        try:
            await indexer.refresh_stale(documents)
        except Exception as e:
            log.warning("Concepts index refresh failed, using cached summaries: %s", e)

    hints = {}
    for path in candidate_paths:
        entry = indexer.get(path)
        if entry is not None and entry.summary:
            hints[title_for(path)] = entry.summary
    return hints


async def find_connections(
    vault: Vault,
    source_path: str | None,
    config: WeaverConfig,
    gateway: ModelGateway,
    limiter: RateLimiter,
    sink: OutputSink | None,
    on_status: StatusCallback | None = None,
    sleep: Sleep = asyncio.sleep,
    indexer: ConceptsIndexer | None = None,
) -> ConnectionResult:
    """Find notes meaningfully connected to the source note and write them out.

    Steps:
    1. Check the provider is usable; abort before any network call if not.
    2. Candidates: every markdown file except the source and excluded folders.
    3. Title pre-filter in chunks, each followed by a fixed pause.
    4. Full-text validation of each surviving candidate, one at a time.
    5. De-duplicate, sort, format and hand the section to the sink.

    An empty result is reported as "No meaningful connections found" and
    nothing is written.

    Args:
        vault: Host vault to read from.
        source_path: Path of the active note.
        config: Settings (model, strength, excluded folders, layout).
        gateway: Model gateway.
        limiter: Shared rate limiter.
        sink: Where to write the section. None means there is no editor.
        on_status: Receives transient status messages.
        sleep: Coroutine used for the inter-chunk pause.
        indexer: Concepts index; only consulted when ``use_concepts_index`` is set.

    Returns:
        The run outcome. Aborted runs carry the error message instead of raising.
    """
    result = ConnectionResult(state=ConnectionState.IDLE)

    result.state = ConnectionState.CHECKING_CREDENTIALS
    try:
        profile, source = _prepare(vault, source_path, config, sink)
    except WeaverError as e:
        return _abort(result, e, on_status)

    log.info("Starting connection finding for %s", source.id)
    _notify(on_status, "info", "Finding connections...")

    candidate_paths = build_candidate_set(vault.markdown_files(), source.id, config.excluded_folders)
    result.candidates = len(candidate_paths)

    concepts = None
    if indexer is not None and config.use_concepts_index and candidate_paths:
        concepts = await _concept_hints(indexer, vault, source, candidate_paths)

    # Pre-filter on titles
    result.state = ConnectionState.PRE_FILTERING
    survivors: list[str] = []
    total = len(candidate_paths)
    for start in range(0, total, TITLE_CHUNK_SIZE):
        chunk = candidate_paths[start : start + TITLE_CHUNK_SIZE]
        end = start + len(chunk)
        _notify(on_status, "progress", f"Quick check: {start + 1}-{end}/{total}", end, total)

        flags = await check_titles_relevance(
            gateway,
            limiter,
            profile,
            source.title,
            [title_for(path) for path in chunk],
            concepts,
        )
        for path, keep in zip(chunk, flags):
            if keep:
                survivors.append(path)
            else:
                log.debug("Skipping %s based on title check", path)

        await sleep(TITLE_CHUNK_PAUSE_SECONDS)

    result.prefiltered = len(survivors)

    # Validate full text, one candidate at a time
    result.state = ConnectionState.VALIDATING
    accepted: list[str] = []
    for i, path in enumerate(survivors, start=1):
        _notify(on_status, "progress", f"Checking connections ({i}/{len(survivors)})...", i, len(survivors))

        try:
            body = vault.read(path)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Skipping %s, could not read it: %s", path, e)
            continue

        if await validate_connection(
            gateway,
            limiter,
            profile,
            source.body,
            body,
            config.connection_strength,
            config.special_instructions,
        ):
            log.info("Validated connection: %s", path)
            accepted.append(title_for(path))
        else:
            log.debug("Rejected connection: %s", path)

    result.validated = len(accepted)

    result.state = ConnectionState.FORMATTING
    result.links = sorted(set(accepted))
    if not result.links:
        _notify(on_status, "info", "No meaningful connections found")
        result.state = ConnectionState.DONE
        return result

    text = format_links(
        result.links,
        config.link_format,
        config.show_header,
        config.header_text,
        config.header_level,
    )
    try:
        sink.write_at_cursor(text)  # type: ignore[union-attr]
    except WeaverError as e:
        return _abort(result, e, on_status)

    result.text = text
    result.state = ConnectionState.DONE
    noun = "connection" if len(result.links) == 1 else "connections"
    _notify(on_status, "info", f"Added {len(result.links)} {noun}")
    return result


# =============================================================================
# Weave Tags
# =============================================================================


def collect_vault_tags(vault: Vault) -> set[str]:
    """Union of tags across every markdown file in the vault."""
    tags: set[str] = set()
    for path in vault.markdown_files():
        tags |= vault.get_tags(path)
    return tags


async def suggest_tags(
    vault: Vault,
    source_path: str | None,
    config: WeaverConfig,
    gateway: ModelGateway,
    limiter: RateLimiter,
    sink: OutputSink | None,
    on_status: StatusCallback | None = None,
) -> TagResult:
    """Suggest tags from the vault vocabulary and write them to the sink.

    The vocabulary is every tag used in the vault plus the custom tags from
    the settings (or only the custom tags with ``custom_tags_only``). Tags
    the note already carries are never suggested. An empty vocabulary or
    an empty suggestion is reported as information, not as an error.
    """
    result = TagResult()

    def fail(error: WeaverError) -> TagResult:
        log.warning("Weave tags aborted: %s", error.message)
        result.error = error.message
        result.error_code = error.code.value
        _notify(on_status, "error", error.message)
        return result

    try:
        profile, source = _prepare(vault, source_path, config, sink)
    except WeaverError as e:
        return fail(e)

    vault_tags = set() if config.custom_tags_only else collect_vault_tags(vault)
    vocabulary = build_vocabulary(vault_tags, config.custom_tags, config.custom_tags_only)
    result.vocabulary_size = len(vocabulary)
    if not vocabulary:
        _notify(on_status, "info", "No tags available to choose from")
        return result

    _notify(on_status, "info", "Weaving tags...")
    existing = vault.get_tags(source.id)

    try:
        tags = await weave_tags(gateway, limiter, profile, source.body, vocabulary, existing)
    except WeaverError as e:
        return fail(e)

    if not tags:
        _notify(on_status, "info", "No new tags to add")
        return result

    text = " ".join(tags)
    try:
        sink.write_at_cursor(f"{text}\n")  # type: ignore[union-attr]
    except WeaverError as e:
        return fail(e)

    result.tags = tags
    result.text = text
    _notify(on_status, "info", f"Added tags: {text}")
    return result


# =============================================================================
# Concepts Index
# =============================================================================


async def reindex_vault(
    vault: Vault,
    config: WeaverConfig,
    gateway: ModelGateway,
    limiter: RateLimiter,
    vault_root: Path | None = None,
    on_status: StatusCallback | None = None,
    sleep: Sleep = asyncio.sleep,
) -> int:
    """Rebuild the concepts index for every note outside the excluded folders.

    Returns:
        Number of notes indexed.

    Raises:
        ConfigurationError: If the provider is not usable.
        ProviderError: If a batch fails. Entries written before it are kept.
    """
    profile = resolve_profile(config)
    require_credentials(profile)

    paths = [p for p in vault.markdown_files() if not is_excluded(p, config.excluded_folders)]
    documents = read_documents(vault, paths)
    _notify(on_status, "info", f"Indexing concepts for {len(documents)} notes...")

    indexer = ConceptsIndexer(gateway, limiter, profile, vault_root=vault_root, sleep=sleep)
    count = await indexer.reindex(documents)

    _notify(on_status, "info", f"Indexed {count} notes")
    return count
