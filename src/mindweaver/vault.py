"""Host primitives: reading notes from a vault and writing results back.

The connection engine only talks to the ``Vault`` and ``OutputSink``
protocols. ``FileSystemVault`` and the sinks below are the implementations
used by the CLI; other hosts (an editor plugin, a server) provide their own.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath
from typing import Protocol

import frontmatter

from .errors import NoActiveDocument, NoEditor
from .models import Document

log = logging.getLogger(__name__)

# Inline #tags: must follow whitespace or line start, and start with a letter
# so headings ("# Title") and numbers ("#1") are not picked up.
INLINE_TAG_PATTERN = re.compile(r"(?:^|(?<=\s))#([A-Za-z][\w/-]*)")


class Vault(Protocol):
    def markdown_files(self) -> list[str]: ...

    def get_file(self, path: str) -> str | None: ...

    def read(self, path: str) -> str: ...

    def get_tags(self, path: str) -> set[str]: ...


class OutputSink(Protocol):
    def write_at_cursor(self, text: str) -> None: ...


def normalize_vault_path(path: str) -> str:
    """Normalize a path to the vault-relative POSIX form used as document id."""
    return path.strip().replace("\\", "/").strip("/")


def title_for(path: str) -> str:
    """Basename of a vault path without its extension."""
    return PurePosixPath(path).stem


def is_excluded(path: str, excluded_folders: Iterable[str]) -> bool:
    """Check whether a path lies in (or is) one of the excluded folders.

    Matches on folder prefix (``Folder/note.md``) or the exact path
    (``Folder``); ``Folderish/note.md`` is not excluded by ``Folder``.
    """
    for folder in excluded_folders:
        folder = normalize_vault_path(folder)
        if not folder:
            continue
        if path.startswith(folder + "/") or path == folder:
            return True
    return False


def build_candidate_set(
    paths: Sequence[str],
    source_id: str,
    excluded_folders: Iterable[str],
) -> list[str]:
    """All paths except the source and anything in an excluded folder, in order."""
    excluded = list(excluded_folders)
    return [
        path
        for path in paths
        if path != source_id and not is_excluded(path, excluded)
    ]


def _normalize_tag(tag: object) -> str | None:
    text = str(tag).strip()
    if not text:
        return None
    return text if text.startswith("#") else f"#{text}"


def extract_tags(text: str) -> set[str]:
    """Collect tags from frontmatter ``tags`` and inline ``#tag`` occurrences.

    Tags are returned ``#``-prefixed and case-sensitive.
    """
    tags: set[str] = set()

    try:
        post = frontmatter.loads(text)
        metadata, content = post.metadata, post.content
    except Exception as e:
        log.debug("Could not parse frontmatter while extracting tags: %s", e)
        metadata, content = {}, text

    raw = metadata.get("tags") if metadata else None
    if isinstance(raw, str):
        raw = re.split(r"[,\s]+", raw)
    if isinstance(raw, list):
        for tag in raw:
            normalized = _normalize_tag(tag)
            if normalized:
                tags.add(normalized)

    for match in INLINE_TAG_PATTERN.finditer(content):
        tags.add(f"#{match.group(1)}")

    return tags


class FileSystemVault:
    """A vault backed by a directory of markdown files.

    Hidden directories (``.obsidian``, ``.mindweaver``, ``.git``) are skipped.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def markdown_files(self) -> list[str]:
        if not self.root.is_dir():
            return []

        paths = []
        for md_file in sorted(self.root.rglob("*.md")):
            rel = md_file.relative_to(self.root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            paths.append(rel.as_posix())
        return paths

    def get_file(self, path: str) -> str | None:
        normalized = normalize_vault_path(path)
        if not normalized:
            return None
        if not self._inside(normalized):
            return None
        if (self.root / normalized).is_file():
            return normalized
        if not normalized.endswith(".md") and (self.root / f"{normalized}.md").is_file():
            return f"{normalized}.md"
        return None

    def _inside(self, path: str) -> bool:
        return (self.root / path).resolve().is_relative_to(self.root.resolve())

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")

    def get_tags(self, path: str) -> set[str]:
        try:
            return extract_tags(self.read(path))
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Could not read %s for tags: %s", path, e)
            return set()

    def resolve_active(self, path: str) -> str:
        """Resolve the note a command was invoked on.

        Accepts vault-relative paths, paths with or without ``.md``, and
        absolute paths inside the vault.

        Raises:
            NoActiveDocument: If the note does not exist or lies outside
                the vault.
        """
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                path = candidate.resolve().relative_to(self.root.resolve()).as_posix()
            except ValueError:
                raise NoActiveDocument(f"Note is outside the vault: {path}")
        elif not self._inside(normalize_vault_path(path)):
            raise NoActiveDocument(f"Note is outside the vault: {path}")

        resolved = self.get_file(path)
        if resolved is None:
            raise NoActiveDocument(f"Note not found: {path}")
        return resolved


def read_documents(vault: Vault, paths: Iterable[str]) -> list[Document]:
    """Read a snapshot of each path, skipping files that can no longer be read."""
    documents = []
    for path in paths:
        try:
            body = vault.read(path)
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Skipping %s: %s", path, e)
            continue
        documents.append(Document(id=path, title=title_for(path), body=body))
    return documents


class BufferSink:
    """Collects written text; the CLI prints it."""

    def __init__(self) -> None:
        self.written: list[str] = []

    def write_at_cursor(self, text: str) -> None:
        self.written.append(text)

    @property
    def text(self) -> str:
        return "".join(self.written)


class NoteInsertSink:
    """Inserts text into a note file, after a given line or at the end."""

    def __init__(self, note_path: Path, line: int | None = None) -> None:
        self.note_path = Path(note_path)
        self.line = line

    def write_at_cursor(self, text: str) -> None:
        if not self.note_path.is_file():
            raise NoEditor(f"Cannot write into {self.note_path}: file does not exist")

        content = self.note_path.read_text(encoding="utf-8")

        if self.line is None:
            if content and not content.endswith("\n"):
                content += "\n"
            new_content = f"{content}\n{text}" if content else text
        else:
            lines = content.splitlines(keepends=True)
            cut = max(0, min(self.line, len(lines)))
            head = "".join(lines[:cut])
            if head and not head.endswith("\n"):
                head += "\n"
            new_content = f"{head}\n{text}{''.join(lines[cut:])}"

        self.note_path.write_text(new_content, encoding="utf-8")
