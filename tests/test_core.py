"""Tests for the find-connections pipeline, tag weaving and reindexing."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import httpx
import pytest

from conftest import FakeClock, FakeGateway, StatusRecorder, create_note
from mindweaver.concepts_index import ConceptsIndexer, load_index
from mindweaver.config import ConfigurationError, WeaverConfig
from mindweaver.core import find_connections, reindex_vault, suggest_tags
from mindweaver.errors import ProviderError
from mindweaver.llm import STRENGTH_RULES
from mindweaver.llm_providers import ModelGateway
from mindweaver.models import ConceptsIndexData, ConceptsIndexEntry, ConnectionState
from mindweaver.vault import BufferSink, FileSystemVault, NoteInsertSink

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class ReadRecordingVault(FileSystemVault):
    """Filesystem vault that remembers which notes were read, in order."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.reads: list[str] = []

    def read(self, path: str) -> str:
        self.reads.append(path)
        return super().read(path)


@pytest.fixture
def scenario_vault(tmp_vault: Path) -> Path:
    """Source A plus one related (B) and one unrelated (C) note."""
    create_note(tmp_vault, "A.md", "Compound interest grows savings")
    create_note(tmp_vault, "B.md", "Explains compound interest formula")
    create_note(tmp_vault, "C.md", "Grocery list")
    return tmp_vault


async def _run(
    vault_root: Path,
    gateway: FakeGateway,
    limiter,
    clock: FakeClock,
    config: WeaverConfig | None = None,
    source: str | None = "A.md",
    sink=None,
    statuses: StatusRecorder | None = None,
    indexer: ConceptsIndexer | None = None,
):
    return await find_connections(
        FileSystemVault(vault_root),
        source,
        config or WeaverConfig(),
        gateway,
        limiter,
        sink,
        on_status=statuses,
        sleep=clock.sleep,
        indexer=indexer,
    )


# =============================================================================
# Find connections
# =============================================================================


class TestFindConnections:
    """End-to-end behavior of the connection pipeline."""

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, scenario_vault, openai_key, limiter, clock, statuses):
        gateway = FakeGateway(["[true, false]", "true"])
        sink = BufferSink()

        result = await _run(scenario_vault, gateway, limiter, clock, sink=sink, statuses=statuses)

        assert result.state == ConnectionState.DONE
        assert result.text == "### Related notes\n[[B]]\n"
        assert sink.text == "### Related notes\n[[B]]\n"
        assert result.links == ["B"]
        assert (result.candidates, result.prefiltered, result.validated) == (2, 1, 1)

        assert len(gateway.calls) == 2
        title_prompt = gateway.user_prompt(0)
        assert '1. "B"' in title_prompt
        assert '2. "C"' in title_prompt
        assert gateway.calls[0]["binary"] is False

        assert gateway.calls[1]["binary"] is True
        validator_prompt = gateway.user_prompt(1)
        assert "Note 1:\nCompound interest grows savings" in validator_prompt
        assert "Note 2:\nExplains compound interest formula" in validator_prompt

        # One fixed pause after the single pre-filter chunk
        assert clock.sleeps == [1.0]
        assert statuses.of_kind("info")[-1] == "Added 1 connection"

    @pytest.mark.asyncio
    async def test_titles_with_hash_and_pipe_kept_whole(self, tmp_vault, openai_key, limiter, clock):
        create_note(tmp_vault, "A.md", "Programming languages overview")
        create_note(tmp_vault, "C# basics.md", "Intro to C#")
        create_note(tmp_vault, "Q&A | FAQ.md", "Common questions")
        gateway = FakeGateway(["[true, true]", "true", "true"])
        sink = BufferSink()

        result = await _run(tmp_vault, gateway, limiter, clock, sink=sink)

        assert result.links == ["C# basics", "Q&A | FAQ"]
        assert sink.text == "### Related notes\n[[C# basics]], [[Q&A | FAQ]]\n"

    @pytest.mark.asyncio
    async def test_missing_credentials_aborts_before_network(self, scenario_vault, limiter, clock, statuses):
        gateway = FakeGateway()
        sink = BufferSink()

        result = await _run(scenario_vault, gateway, limiter, clock, sink=sink, statuses=statuses)

        assert result.state == ConnectionState.ABORTED
        assert result.error_code == "CONFIGURATION_ERROR"
        assert "OPENAI_API_KEY" in result.error
        assert gateway.calls == []
        assert sink.written == []
        assert len(statuses.of_kind("error")) == 1

    @pytest.mark.asyncio
    async def test_no_connections_writes_nothing(self, scenario_vault, openai_key, limiter, clock, statuses):
        gateway = FakeGateway(["[true, true]", "false", "false"])
        sink = BufferSink()

        result = await _run(scenario_vault, gateway, limiter, clock, sink=sink, statuses=statuses)

        assert result.state == ConnectionState.DONE
        assert result.links == []
        assert result.text == ""
        assert sink.written == []
        assert "No meaningful connections found" in statuses.of_kind("info")

    @pytest.mark.asyncio
    async def test_no_candidates(self, tmp_vault, openai_key, limiter, clock, statuses):
        create_note(tmp_vault, "A.md", "Alone")
        gateway = FakeGateway()

        result = await _run(tmp_vault, gateway, limiter, clock, sink=BufferSink(), statuses=statuses)

        assert result.state == ConnectionState.DONE
        assert gateway.calls == []
        assert "No meaningful connections found" in statuses.of_kind("info")

    @pytest.mark.asyncio
    async def test_excluded_folders_never_reach_the_model(self, scenario_vault, openai_key, limiter, clock):
        create_note(scenario_vault, "Templates/D.md", "Compound interest template")
        create_note(scenario_vault, "Templates.md", "Not inside the folder")
        gateway = FakeGateway(["[false, false, false]"])
        config = WeaverConfig(excluded_folders=["Templates"])

        result = await _run(scenario_vault, gateway, limiter, clock, config=config, sink=BufferSink())

        assert result.candidates == 3
        prompt = gateway.user_prompt(0)
        assert '"D"' not in prompt
        assert '"Templates"' in prompt

    @pytest.mark.asyncio
    async def test_titles_checked_in_chunks_of_five(self, tmp_vault, openai_key, limiter, clock, statuses):
        create_note(tmp_vault, "A.md", "source")
        for i in range(7):
            create_note(tmp_vault, f"N{i}.md", f"note {i}")
        gateway = FakeGateway(["[false, false, false, false, false]", "[false, false]"])

        result = await _run(tmp_vault, gateway, limiter, clock, sink=BufferSink(), statuses=statuses)

        assert result.candidates == 7
        assert len(gateway.calls) == 2
        assert clock.sleeps == [1.0, 1.0]
        assert statuses.of_kind("progress") == ["Quick check: 1-5/7", "Quick check: 6-7/7"]

    @pytest.mark.asyncio
    async def test_unreadable_title_response_keeps_all_candidates(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway(["B looks related", "true", "false"])

        result = await _run(scenario_vault, gateway, limiter, clock, sink=BufferSink())

        assert result.prefiltered == 2
        assert len(gateway.calls) == 3
        assert result.links == ["B"]

    @pytest.mark.asyncio
    async def test_validator_error_only_rejects_that_candidate(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway(["[true, true]", ProviderError(500, "boom"), "true"])

        result = await _run(scenario_vault, gateway, limiter, clock, sink=BufferSink())

        assert result.state == ConnectionState.DONE
        assert result.links == ["C"]

    @pytest.mark.asyncio
    async def test_same_title_in_two_folders_linked_once(self, tmp_vault, openai_key, limiter, clock):
        create_note(tmp_vault, "A.md", "source")
        create_note(tmp_vault, "x/B.md", "first B")
        create_note(tmp_vault, "y/B.md", "second B")
        gateway = FakeGateway(["[true, true]", "true", "true"])

        result = await _run(tmp_vault, gateway, limiter, clock, sink=BufferSink())

        assert result.validated == 2
        assert result.links == ["B"]
        assert result.text == "### Related notes\n[[B]]\n"

    @pytest.mark.asyncio
    async def test_strength_and_instructions_reach_validator(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway(["[true, false]", "true"])
        config = WeaverConfig(connection_strength="relaxed", special_instructions="Prefer finance notes.")

        await _run(scenario_vault, gateway, limiter, clock, config=config, sink=BufferSink())

        system = gateway.system_prompt(1)
        assert STRENGTH_RULES["relaxed"] in system
        assert system.endswith("Prefer finance notes.")

    @pytest.mark.asyncio
    async def test_layout_from_settings(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway(["[true, true]", "true", "true"])
        config = WeaverConfig(link_format="bullet", header_text="See also", header_level=2)

        result = await _run(scenario_vault, gateway, limiter, clock, config=config, sink=BufferSink())

        assert result.text == "## See also\n- [[B]]\n- [[C]]\n"

    @pytest.mark.asyncio
    async def test_writes_into_note(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway(["[true, false]", "true"])
        note = scenario_vault / "A.md"

        await _run(scenario_vault, gateway, limiter, clock, sink=NoteInsertSink(note))

        assert note.read_text() == "Compound interest grows savings\n\n### Related notes\n[[B]]\n"

    @pytest.mark.asyncio
    async def test_missing_source(self, scenario_vault, openai_key, limiter, clock, statuses):
        gateway = FakeGateway()

        result = await _run(
            scenario_vault, gateway, limiter, clock, source="Nope.md", sink=BufferSink(), statuses=statuses
        )

        assert result.state == ConnectionState.ABORTED
        assert result.error_code == "NO_ACTIVE_DOCUMENT"
        assert gateway.calls == []
        assert len(statuses.of_kind("error")) == 1

    @pytest.mark.asyncio
    async def test_no_active_note(self, scenario_vault, openai_key, limiter, clock):
        result = await _run(scenario_vault, FakeGateway(), limiter, clock, source=None, sink=BufferSink())

        assert result.state == ConnectionState.ABORTED
        assert result.error_code == "NO_ACTIVE_DOCUMENT"

    @pytest.mark.asyncio
    async def test_no_editor(self, scenario_vault, openai_key, limiter, clock):
        gateway = FakeGateway()

        result = await _run(scenario_vault, gateway, limiter, clock, sink=None)

        assert result.state == ConnectionState.ABORTED
        assert result.error_code == "NO_EDITOR"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_note_deleted_before_write(self, scenario_vault, openai_key, limiter, clock, statuses):
        gateway = FakeGateway(["[true, false]", "true"])
        sink = NoteInsertSink(scenario_vault / "Deleted.md")

        result = await _run(scenario_vault, gateway, limiter, clock, sink=sink, statuses=statuses)

        assert result.state == ConnectionState.ABORTED
        assert result.error_code == "NO_EDITOR"
        assert len(statuses.of_kind("error")) == 1


class TestConceptsInPipeline:
    """The concepts index only participates when enabled."""

    def _indexer(self, gateway, limiter, profile, clock):
        return ConceptsIndexer(gateway, limiter, profile, sleep=clock.sleep, now=lambda: NOW)

    @pytest.mark.asyncio
    async def test_summaries_enrich_title_check(self, scenario_vault, openai_key, limiter, profile, clock):
        gateway = FakeGateway(
            [
                "savings growth\n---NEXT NOTE---\ncompound interest\n---NEXT NOTE---\nshopping",
                "[true, false]",
                "true",
            ]
        )
        config = WeaverConfig(use_concepts_index=True)
        indexer = self._indexer(gateway, limiter, profile, clock)

        result = await _run(scenario_vault, gateway, limiter, clock, config=config, sink=BufferSink(), indexer=indexer)

        assert result.links == ["B"]
        assert len(gateway.calls) == 3
        assert "(concepts: compound interest)" in gateway.user_prompt(1)
        assert "(concepts: shopping)" in gateway.user_prompt(1)

    @pytest.mark.asyncio
    async def test_disabled_index_is_not_consulted(self, scenario_vault, openai_key, limiter, profile, clock):
        gateway = FakeGateway(["[true, false]", "true"])
        indexer = self._indexer(gateway, limiter, profile, clock)

        result = await _run(scenario_vault, gateway, limiter, clock, sink=BufferSink(), indexer=indexer)

        assert len(gateway.calls) == 2
        assert result.links == ["B"]

    @pytest.mark.asyncio
    async def test_index_failure_is_absorbed(self, scenario_vault, openai_key, limiter, profile, clock):
        gateway = FakeGateway([ProviderError(500, "boom"), "[true, false]", "true"])
        config = WeaverConfig(use_concepts_index=True)
        indexer = self._indexer(gateway, limiter, profile, clock)

        result = await _run(scenario_vault, gateway, limiter, clock, config=config, sink=BufferSink(), indexer=indexer)

        assert result.state == ConnectionState.DONE
        assert result.links == ["B"]
        assert "concepts:" not in gateway.user_prompt(1)

    @staticmethod
    def _fresh(*ids: str) -> ConceptsIndexData:
        return ConceptsIndexData(
            entries={
                doc_id: ConceptsIndexEntry(document_id=doc_id, summary=f"about {doc_id}", indexed_at=NOW)
                for doc_id in ids
            }
        )

    @pytest.mark.asyncio
    async def test_only_stale_notes_are_read(self, scenario_vault, openai_key, limiter, profile, clock):
        gateway = FakeGateway(["shopping", "[true, false]", "true"])
        vault = ReadRecordingVault(scenario_vault)
        indexer = ConceptsIndexer(
            gateway, limiter, profile, data=self._fresh("A.md", "B.md"), sleep=clock.sleep, now=lambda: NOW
        )

        result = await find_connections(
            vault, "A.md", WeaverConfig(use_concepts_index=True), gateway, limiter, BufferSink(),
            sleep=clock.sleep, indexer=indexer,
        )

        assert result.links == ["B"]
        assert vault.reads == ["A.md", "C.md", "B.md"]
        assert "Grocery list" in gateway.user_prompt(0)
        assert "Explains compound interest formula" not in gateway.user_prompt(0)
        assert "(concepts: shopping)" in gateway.user_prompt(1)

    @pytest.mark.asyncio
    async def test_fresh_index_reads_nothing_extra(self, scenario_vault, openai_key, limiter, profile, clock):
        gateway = FakeGateway(["[true, false]", "true"])
        vault = ReadRecordingVault(scenario_vault)
        indexer = ConceptsIndexer(
            gateway, limiter, profile, data=self._fresh("A.md", "B.md", "C.md"), sleep=clock.sleep, now=lambda: NOW
        )

        result = await find_connections(
            vault, "A.md", WeaverConfig(use_concepts_index=True), gateway, limiter, BufferSink(),
            sleep=clock.sleep, indexer=indexer,
        )

        assert result.links == ["B"]
        assert len(gateway.calls) == 2
        assert vault.reads == ["A.md", "B.md"]
        assert "(concepts: about C.md)" in gateway.user_prompt(0)


# =============================================================================
# Weave tags
# =============================================================================


@pytest.fixture
def tagged_vault(tmp_vault: Path) -> Path:
    create_note(tmp_vault, "A.md", "Compound interest grows savings")
    create_note(tmp_vault, "B.md", "Budget", tags=["finance"])
    create_note(tmp_vault, "C.md", "Trip to Lisbon", tags=["travel"])
    return tmp_vault


class TestSuggestTags:
    @pytest.mark.asyncio
    async def test_scenario(self, tagged_vault, openai_key, limiter, statuses):
        gateway = FakeGateway(["#finance, #travel"])
        sink = BufferSink()

        result = await suggest_tags(
            FileSystemVault(tagged_vault), "A.md", WeaverConfig(), gateway, limiter, sink, on_status=statuses
        )

        assert result.tags == ["#finance", "#travel"]
        assert result.vocabulary_size == 2
        assert sink.text == "#finance #travel\n"
        assert "#finance, #travel" in gateway.system_prompt(0)

    @pytest.mark.asyncio
    async def test_existing_tags_not_suggested(self, tagged_vault, openai_key, limiter):
        create_note(tagged_vault, "A.md", "Compound interest grows savings", tags=["travel"])
        gateway = FakeGateway(["#finance, #travel"])

        result = await suggest_tags(
            FileSystemVault(tagged_vault), "A.md", WeaverConfig(), gateway, limiter, BufferSink()
        )

        assert result.tags == ["#finance"]

    @pytest.mark.asyncio
    async def test_empty_vocabulary_is_informational(self, tmp_vault, openai_key, limiter, statuses):
        create_note(tmp_vault, "A.md", "No tags anywhere")
        gateway = FakeGateway()
        sink = BufferSink()

        result = await suggest_tags(
            FileSystemVault(tmp_vault), "A.md", WeaverConfig(), gateway, limiter, sink, on_status=statuses
        )

        assert result.error is None
        assert result.tags == []
        assert gateway.calls == []
        assert sink.written == []
        assert "No tags available to choose from" in statuses.of_kind("info")
        assert statuses.of_kind("error") == []

    @pytest.mark.asyncio
    async def test_empty_suggestion_is_informational(self, tagged_vault, openai_key, limiter, statuses):
        gateway = FakeGateway(["#unrelated"])
        sink = BufferSink()

        result = await suggest_tags(
            FileSystemVault(tagged_vault), "A.md", WeaverConfig(), gateway, limiter, sink, on_status=statuses
        )

        assert result.error is None
        assert sink.written == []
        assert "No new tags to add" in statuses.of_kind("info")

    @pytest.mark.asyncio
    async def test_custom_tags_only(self, tagged_vault, openai_key, limiter):
        gateway = FakeGateway(["#ideas, #finance"])
        config = WeaverConfig(custom_tags=["ideas"], custom_tags_only=True)

        result = await suggest_tags(FileSystemVault(tagged_vault), "A.md", config, gateway, limiter, BufferSink())

        assert result.tags == ["#ideas"]
        assert result.vocabulary_size == 1

    @pytest.mark.asyncio
    async def test_missing_credentials(self, tagged_vault, limiter, statuses):
        gateway = FakeGateway()

        result = await suggest_tags(
            FileSystemVault(tagged_vault), "A.md", WeaverConfig(), gateway, limiter, BufferSink(), on_status=statuses
        )

        assert result.error_code == "CONFIGURATION_ERROR"
        assert gateway.calls == []
        assert len(statuses.of_kind("error")) == 1

    @pytest.mark.asyncio
    async def test_provider_error_reported(self, tagged_vault, openai_key, limiter):
        gateway = FakeGateway([ProviderError(401, "bad key")])

        result = await suggest_tags(
            FileSystemVault(tagged_vault), "A.md", WeaverConfig(), gateway, limiter, BufferSink()
        )

        assert result.error_code == "PROVIDER_ERROR"
        assert "bad key" in result.error

    @pytest.mark.asyncio
    async def test_provider_error_body_not_shown(self, tagged_vault, limiter, statuses):
        body = '{"internal_trace":"db-host-7 stack xyz","key":"sk-leak"}'

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text=body)

        gateway = ModelGateway(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        config = WeaverConfig(model="llama-local", endpoint="http://llm.test")

        async with gateway:
            result = await suggest_tags(
                FileSystemVault(tagged_vault), "A.md", config, gateway, limiter, BufferSink(), on_status=statuses
            )

        assert result.error == "HTTP 500: Internal Server Error"
        assert "sk-leak" not in result.error
        assert all("db-host-7" not in message for message in statuses.of_kind("error"))


# =============================================================================
# Reindex
# =============================================================================


class TestReindexVault:
    @pytest.mark.asyncio
    async def test_indexes_vault_and_persists(self, tmp_vault, openai_key, limiter, clock):
        create_note(tmp_vault, "A.md", "a")
        create_note(tmp_vault, "B.md", "b")
        create_note(tmp_vault, "Templates/T.md", "t")
        gateway = FakeGateway(["about a\n---NEXT NOTE---\nabout b"])
        config = WeaverConfig(excluded_folders=["Templates"])

        count = await reindex_vault(
            FileSystemVault(tmp_vault), config, gateway, limiter, vault_root=tmp_vault, sleep=clock.sleep
        )

        assert count == 2
        data = load_index(tmp_vault)
        assert data.entries["A.md"].summary == "about a"
        assert data.entries["B.md"].summary == "about b"
        assert "Templates/T.md" not in data.entries
        assert data.last_indexed is not None

    @pytest.mark.asyncio
    async def test_requires_credentials(self, tmp_vault, limiter):
        create_note(tmp_vault, "A.md", "a")

        with pytest.raises(ConfigurationError):
            await reindex_vault(FileSystemVault(tmp_vault), WeaverConfig(), FakeGateway(), limiter)
