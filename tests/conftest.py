"""Shared test fixtures for the mindweaver test suite.

Design:
- tmp_vault: isolated vault in a temp directory with a settings file
- FakeGateway: scripted stand-in for ModelGateway that records every call
- FakeClock: clock plus sleep that advance virtual time instead of waiting
- Async tests use pytest-asyncio (strict mode, function-scoped loops)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
from click.testing import CliRunner

from mindweaver import _logging
from mindweaver.llm_providers import Completion, Message
from mindweaver.models import ProviderProfile, StatusMessage
from mindweaver.rate_limit import RateLimiter

ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "TOGETHER_API_KEY",
    "LOCAL_LLM_ENDPOINT",
    "MINDWEAVER_VAULT",
    "MINDWEAVER_QUIET",
    "MINDWEAVER_LOG_LEVEL",
)


# ─────────────────────────────────────────────────────────────────────────────
# Isolation
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Keep real credentials and vault settings out of every test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    logger = logging.getLogger("mindweaver")
    level = logger.level
    yield
    logger.setLevel(level)
    _logging._quiet_mode = False


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def tmp_vault(tmp_path: Path) -> Path:
    """Create an isolated vault with a default settings file.

    Usage:
        def test_something(tmp_vault):
            create_note(tmp_vault, "A.md", "Body")
    """
    vault_root = tmp_path / "vault"
    vault_root.mkdir()
    (vault_root / ".mindweaver.yaml").write_text("model: gpt-3.5-turbo\n")
    return vault_root


@pytest.fixture
def openai_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return "sk-test"


@pytest.fixture
def profile() -> ProviderProfile:
    return ProviderProfile(model_id="gpt-3.5-turbo", kind="openai", credential="sk-test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    """Real limiter on virtual time, so tests never actually wait."""
    return RateLimiter(clock=clock, sleep=clock.sleep)


@pytest.fixture
def statuses() -> StatusRecorder:
    return StatusRecorder()


# ─────────────────────────────────────────────────────────────────────────────
# Test Doubles
# ─────────────────────────────────────────────────────────────────────────────


class FakeGateway:
    """Stands in for ModelGateway: answers from a script and records calls.

    Each scripted response is either text or an exception to raise. A handler
    callable may be given instead to answer based on the request.
    """

    def __init__(
        self,
        responses: Sequence[str | Exception] = (),
        handler: Callable[[Sequence[Message], bool], str] | None = None,
    ) -> None:
        self.responses = list(responses)
        self.handler = handler
        self.calls: list[dict] = []
        self.closed = False

    async def complete(
        self,
        messages: Sequence[Message],
        profile: ProviderProfile,
        *,
        binary: bool = False,
        max_tokens: int | None = None,
    ) -> Completion:
        self.calls.append(
            {
                "messages": list(messages),
                "profile": profile,
                "binary": binary,
                "max_tokens": max_tokens,
            }
        )
        if self.handler is not None:
            result: str | Exception = self.handler(messages, binary)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return Completion(text=result)

    async def aclose(self) -> None:
        self.closed = True

    async def __aenter__(self) -> FakeGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def user_prompt(self, index: int) -> str:
        return next(m["content"] for m in self.calls[index]["messages"] if m["role"] == "user")

    def system_prompt(self, index: int) -> str:
        return next(m["content"] for m in self.calls[index]["messages"] if m["role"] == "system")


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StatusRecorder:
    """Collects StatusMessage notifications."""

    def __init__(self) -> None:
        self.messages: list[StatusMessage] = []

    def __call__(self, status: StatusMessage) -> None:
        self.messages.append(status)

    def of_kind(self, kind: str) -> list[str]:
        return [m.message for m in self.messages if m.kind == kind]


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions (for test code, not fixtures)
# ─────────────────────────────────────────────────────────────────────────────


def create_note(vault_root: Path, path: str, body: str, tags: list[str] | None = None) -> Path:
    """Helper to create a note, with a tags frontmatter block when tags are given.

    Usage in tests:
        from conftest import create_note
        note = create_note(tmp_vault, "finance/Budget.md", "Content", ["finance"])
    """
    note_path = vault_root / path
    note_path.parent.mkdir(parents=True, exist_ok=True)

    if tags:
        content = f"---\ntags: [{', '.join(tags)}]\n---\n{body}"
    else:
        content = body
    note_path.write_text(content)
    return note_path
