"""Configuration management for mindweaver.

This module contains all tunable constants for the connection pipeline and
the loader for the per-vault settings file (.mindweaver.yaml). Magic numbers
are documented here rather than scattered throughout the codebase.
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ErrorCode, WeaverError
from .models import ConnectionStrength, LinkFormat, LocalApi, ProviderKind


class ConfigurationError(WeaverError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, message)


# =============================================================================
# Files
# =============================================================================

# Settings file at the vault root; its presence also marks the vault during discovery
CONFIG_FILENAME = ".mindweaver.yaml"

# Directory inside the vault for cached state (concepts index)
STATE_DIRNAME = ".mindweaver"

# Maximum directory traversal depth when searching upward for the settings file
MAX_VAULT_SEARCH_DEPTH = 10


# =============================================================================
# Rate Limiting
# =============================================================================

# Minimum spacing between any two outbound model calls.
MIN_REQUEST_INTERVAL_SECONDS = 0.5

# Calls permitted before the limiter forces a cool-down, kept below
# the providers' published per-minute limits.
REQUESTS_PER_MINUTE_LIMIT = 150

# Length of the cool-down once the cap is reached. The counter resets after it;
# this is a conservative pause, not a sliding window.
RATE_LIMIT_COOLDOWN_SECONDS = 60.0


# =============================================================================
# Pipeline
# =============================================================================

# Titles judged per pre-filter call
TITLE_CHUNK_SIZE = 5

# Pause after every pre-filter chunk, in addition to the rate limiter
TITLE_CHUNK_PAUSE_SECONDS = 1.0

# Documents summarized per concepts-index call
INDEX_BATCH_SIZE = 5

# Pause between concepts-index batches, in addition to the rate limiter
INDEX_BATCH_DELAY_SECONDS = 0.2

# Concepts-index entries older than this are re-summarized
CONCEPTS_TTL = timedelta(hours=24)

# Literal token the model is asked to emit between per-document summaries
CONCEPTS_SEPARATOR = "---NEXT NOTE---"

# Characters of each note body sent for concept extraction
INDEX_CONTENT_PREVIEW_CHARS = 2000


# =============================================================================
# Model Requests
# =============================================================================

# Completion budget for binary judgments and title arrays
DEFAULT_MAX_TOKENS = 100

# Completion budget for a batch of concept summaries
INDEX_MAX_TOKENS = 1000

# Completion budget for a comma-separated tag list
TAG_MAX_TOKENS = 200

DEFAULT_TEMPERATURE = 0.7

# (connect, read) timeout in seconds for raw HTTP providers
REQUEST_TIMEOUT_SECONDS = 120.0

TOGETHER_DEFAULT_ENDPOINT = "https://api.together.xyz"
LOCAL_DEFAULT_ENDPOINT = "http://localhost:8080"


# =============================================================================
# Output
# =============================================================================

DEFAULT_HEADER_TEXT = "Related notes"
DEFAULT_HEADER_LEVEL = 3


# =============================================================================
# Settings
# =============================================================================


class WeaverConfig(BaseModel):
    """Per-vault settings read from .mindweaver.yaml.

    Credentials normally come from the environment; the *_api_key fields
    override them when set.
    """

    model_config = ConfigDict(extra="ignore")

    model: str = "gpt-3.5-turbo"
    provider: ProviderKind | None = None  # None: inferred from the model catalog
    endpoint: str = ""
    local_api: LocalApi = "completion"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    together_api_key: str = ""

    connection_strength: ConnectionStrength = "balanced"
    special_instructions: str = ""
    excluded_folders: list[str] = Field(default_factory=list)

    link_format: LinkFormat = "comma"
    show_header: bool = True
    header_text: str = DEFAULT_HEADER_TEXT
    header_level: int = Field(default=DEFAULT_HEADER_LEVEL, ge=1, le=6)

    custom_tags: list[str] = Field(default_factory=list)
    custom_tags_only: bool = False

    use_concepts_index: bool = False

    @field_validator("excluded_folders")
    @classmethod
    def _normalize_folders(cls, folders: list[str]) -> list[str]:
        cleaned = [f.strip().replace("\\", "/").strip("/") for f in folders]
        return [f for f in cleaned if f]

    @field_validator("custom_tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        cleaned = [t.strip() for t in tags if t and t.strip()]
        return [t if t.startswith("#") else f"#{t}" for t in cleaned]


def get_vault_root() -> Path:
    """Get the vault root directory.

    Discovery order:
    1. MINDWEAVER_VAULT environment variable (explicit override)
    2. Walk up from cwd looking for .mindweaver.yaml
    3. Error with helpful message

    Raises:
        ConfigurationError: If no vault can be found.
    """
    root = os.environ.get("MINDWEAVER_VAULT")
    if root:
        path = Path(root)
        if not path.is_dir():
            raise ConfigurationError(f"MINDWEAVER_VAULT does not point to a directory: {root}")
        return path

    discovered = _discover_vault()
    if discovered:
        return discovered

    raise ConfigurationError(
        "No vault found. Options:\n"
        f"  1. Create {CONFIG_FILENAME} at the root of your vault\n"
        "  2. Set MINDWEAVER_VAULT to the vault directory\n"
        "  3. Pass --vault to the command"
    )


def _discover_vault(start_dir: Path | None = None, max_depth: int = MAX_VAULT_SEARCH_DEPTH) -> Path | None:
    """Walk up from start_dir looking for the settings file.

    Returns:
        The directory containing .mindweaver.yaml, or None.
    """
    current = Path(start_dir or os.getcwd()).resolve()

    for _ in range(max_depth):
        if (current / CONFIG_FILENAME).is_file():
            return current

        parent = current.parent
        if parent == current:  # Reached filesystem root
            break
        current = parent

    return None


def get_config_path(vault_root: Path) -> Path:
    return vault_root / CONFIG_FILENAME


def get_state_dir(vault_root: Path) -> Path:
    """Get the cache directory inside the vault, creating it if needed."""
    state_dir = vault_root / STATE_DIRNAME
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def load_weaver_config(vault_root: Path) -> WeaverConfig:
    """Load settings for a vault, falling back to defaults when the file is absent.

    Raises:
        ConfigurationError: If the file exists but is not valid YAML or has
            invalid values.
    """
    path = get_config_path(vault_root)
    if not path.exists():
        return WeaverConfig()

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping of settings")

    try:
        return WeaverConfig.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ConfigurationError(f"Invalid settings in {path}:\n" + "\n".join(errors)) from e


def save_weaver_config(config: WeaverConfig, vault_root: Path) -> Path:
    """Write settings back to .mindweaver.yaml, omitting values left at their defaults."""
    path = get_config_path(vault_root)
    data = config.model_dump(mode="json", exclude_defaults=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def add_excluded_folder(config: WeaverConfig, folder: str) -> bool:
    """Add a folder to the exclusion list.

    Returns:
        True if the list changed, False if the folder was already excluded.
    """
    normalized = folder.strip().replace("\\", "/").strip("/")
    if not normalized:
        raise ConfigurationError("Folder name must not be empty")
    if normalized in config.excluded_folders:
        return False
    config.excluded_folders.append(normalized)
    return True


def remove_excluded_folder(config: WeaverConfig, folder: str) -> bool:
    """Remove a folder from the exclusion list.

    Returns:
        True if the list changed, False if the folder was not excluded.
    """
    normalized = folder.strip().replace("\\", "/").strip("/")
    if normalized not in config.excluded_folders:
        return False
    config.excluded_folders.remove(normalized)
    return True
