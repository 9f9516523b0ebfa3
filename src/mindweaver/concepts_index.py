"""Persistent concepts index: a short concept summary per note.

Summaries are produced in batches, one model call per batch. The model is
asked to separate its per-note summaries with a literal separator line and
the response is split positionally. This is best-effort: if the model emits
fewer segments than notes, the remaining notes in that batch get an empty
summary, and extra segments are ignored. Nothing checks the alignment.

The index is stored at {vault}/.mindweaver/concepts_index.json.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .config import (
    CONCEPTS_SEPARATOR,
    CONCEPTS_TTL,
    INDEX_BATCH_DELAY_SECONDS,
    INDEX_BATCH_SIZE,
    INDEX_CONTENT_PREVIEW_CHARS,
    INDEX_MAX_TOKENS,
    get_state_dir,
)
from .llm_providers import Message, ModelGateway
from .models import ConceptsIndexData, ConceptsIndexEntry, Document, ProviderProfile
from .rate_limit import RateLimiter, Sleep

log = logging.getLogger(__name__)

CACHE_FILENAME = "concepts_index.json"


def get_index_path(vault_root: Path) -> Path:
    return get_state_dir(vault_root) / CACHE_FILENAME


def load_index(vault_root: Path) -> ConceptsIndexData:
    path = get_index_path(vault_root)
    if not path.exists():
        return ConceptsIndexData()

    try:
        return ConceptsIndexData.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable concepts index %s: %s", path, e)
        return ConceptsIndexData()


def save_index(data: ConceptsIndexData, vault_root: Path) -> None:
    path = get_index_path(vault_root)
    path.write_text(data.model_dump_json(indent=2), encoding="utf-8")


def is_stale(entry: ConceptsIndexEntry | None, now: datetime) -> bool:
    """An entry is stale when missing or older than CONCEPTS_TTL."""
    if entry is None:
        return True
    indexed_at = entry.indexed_at
    if indexed_at.tzinfo is None:
        indexed_at = indexed_at.replace(tzinfo=UTC)
    return now - indexed_at > CONCEPTS_TTL


def split_concepts_response(text: str, count: int) -> list[str]:
    """Split a batch response into ``count`` summaries by position.

    Missing trailing segments become empty strings; surplus segments are dropped.
    """
    segments = [segment.strip() for segment in text.split(CONCEPTS_SEPARATOR)]
    return [segments[i] if i < len(segments) else "" for i in range(count)]


def build_concepts_messages(documents: Sequence[Document]) -> list[Message]:
    sections = []
    for i, doc in enumerate(documents):
        sections.append(
            f"NOTE {i + 1}\nTitle: {doc.title}\nContent:\n{doc.body[:INDEX_CONTENT_PREVIEW_CHARS]}"
        )

    system = f"""You extract the key concepts of notes in a personal knowledge base.
For each note, write one or two lines listing its main topics, concepts and named entities.
Write the summaries in the same order as the notes.
Separate consecutive summaries with a line containing exactly {CONCEPTS_SEPARATOR}
Do not number the summaries or add any other text."""

    return [
        {"role": "system", "content": system},
        {"role": "user", "content": "\n\n".join(sections)},
    ]


class ConceptsIndexer:
    """Builds and caches concept summaries for vault documents.

    Args:
        gateway: Model gateway to call.
        limiter: Shared rate limiter; a slot is acquired before every batch.
        profile: Provider profile to use.
        vault_root: Where to persist the index. None keeps it in memory only.
        data: Pre-loaded index data (loaded from vault_root when omitted).
        sleep: Coroutine used for the inter-batch delay.
        now: Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        limiter: RateLimiter,
        profile: ProviderProfile,
        vault_root: Path | None = None,
        data: ConceptsIndexData | None = None,
        sleep: Sleep = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        batch_size: int = INDEX_BATCH_SIZE,
        batch_delay: float = INDEX_BATCH_DELAY_SECONDS,
    ) -> None:
        self.gateway = gateway
        self.limiter = limiter
        self.profile = profile
        self.vault_root = vault_root
        if data is None:
            data = load_index(vault_root) if vault_root else ConceptsIndexData()
        self.data = data
        self._sleep = sleep
        self._now = now
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    @property
    def last_indexed(self) -> datetime | None:
        return self.data.last_indexed

    def get(self, document_id: str) -> ConceptsIndexEntry | None:
        return self.data.entries.get(document_id)

    def summaries(self) -> dict[str, str]:
        """Document id -> summary for every non-empty entry."""
        return {doc_id: e.summary for doc_id, e in self.data.entries.items() if e.summary}

    def stale_ids(self, document_ids: Sequence[str]) -> list[str]:
        """Ids whose entry is missing or older than the TTL, in input order."""
        now = self._now()
        return [doc_id for doc_id in document_ids if is_stale(self.get(doc_id), now)]

    def stale_documents(self, documents: Sequence[Document]) -> list[Document]:
        stale = set(self.stale_ids([doc.id for doc in documents]))
        return [doc for doc in documents if doc.id in stale]

    async def reindex(self, documents: Sequence[Document]) -> int:
        """Summarize every document and overwrite its entry.

        ``last_indexed`` only advances when every batch succeeded. On failure
        the entries written so far are kept (and persisted) and the error
        propagates.

        Returns:
            Number of documents indexed.

        Raises:
            ProviderError: If a batch call fails.
        """
        indexed = 0
        batches = [
            documents[i : i + self.batch_size]
            for i in range(0, len(documents), self.batch_size)
        ]

        try:
            for n, batch in enumerate(batches):
                if n > 0:
                    await self._sleep(self.batch_delay)

                await self.limiter.wait_for_slot()
                completion = await self.gateway.complete(
                    build_concepts_messages(batch),
                    self.profile,
                    max_tokens=INDEX_MAX_TOKENS,
                )

                summaries = split_concepts_response(completion.text, len(batch))
                stamp = self._now()
                for doc, summary in zip(batch, summaries):
                    self.data.entries[doc.id] = ConceptsIndexEntry(
                        document_id=doc.id, summary=summary, indexed_at=stamp
                    )
                indexed += len(batch)
                log.debug("Indexed batch %d/%d", n + 1, len(batches))

            self.data.last_indexed = self._now()
        finally:
            if self.vault_root is not None:
                save_index(self.data, self.vault_root)

        log.info("Concepts index updated for %d documents", indexed)
        return indexed

    async def refresh_stale(self, documents: Sequence[Document]) -> int:
        """Reindex only documents whose entry is missing or older than the TTL."""
        stale = self.stale_documents(documents)
        if not stale:
            return 0
        return await self.reindex(stale)
