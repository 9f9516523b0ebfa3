"""Data models shared across mindweaver."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

ConnectionStrength = Literal["strict", "balanced", "relaxed"]
LinkFormat = Literal["comma", "bullet", "numbered", "line"]
ProviderKind = Literal["openai", "anthropic", "together", "local"]
LocalApi = Literal["completion", "generate"]
StatusKind = Literal["info", "error", "progress"]


@dataclass(frozen=True)
class Document:
    """Snapshot of a note at the time it was read."""

    id: str
    """Vault-relative POSIX path, e.g. ``finance/Compound interest.md``."""

    title: str
    """Basename without extension."""

    body: str


class ProviderProfile(BaseModel):
    """Static description of which model to call and how to reach it."""

    model_id: str  # Provider-specific model name
    kind: ProviderKind
    endpoint: str = ""  # Base URL; empty means the provider default
    credential: str = ""  # API key; unused by local servers
    local_api: LocalApi = "completion"  # llama.cpp /completion or Ollama /api/generate


class ConceptsIndexEntry(BaseModel):
    """Cached concept summary for one document."""

    document_id: str
    summary: str = ""
    indexed_at: datetime


class ConceptsIndexData(BaseModel):
    """On-disk shape of the concepts index."""

    last_indexed: datetime | None = None
    entries: dict[str, ConceptsIndexEntry] = Field(default_factory=dict)


class ConnectionState(str, Enum):
    """Lifecycle of one find-connections invocation."""

    IDLE = "idle"
    CHECKING_CREDENTIALS = "checking_credentials"
    PRE_FILTERING = "pre_filtering"
    VALIDATING = "validating"
    FORMATTING = "formatting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class StatusMessage:
    """Transient status shown to the user while an action runs."""

    kind: StatusKind
    message: str
    current: int | None = None
    total: int | None = None


@dataclass
class ConnectionResult:
    """Outcome of a find-connections run."""

    state: ConnectionState
    links: list[str] = field(default_factory=list)
    text: str = ""
    candidates: int = 0
    prefiltered: int = 0
    validated: int = 0
    error: str | None = None
    error_code: str | None = None


@dataclass
class TagResult:
    """Outcome of a weave-tags run."""

    tags: list[str] = field(default_factory=list)
    text: str = ""
    vocabulary_size: int = 0
    error: str | None = None
    error_code: str | None = None
