"""Sandboxed file store confining every tool-visible path to one root."""

from __future__ import annotations

import os
import re
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from itertools import islice
from pathlib import Path
from typing import Callable, Iterator, NamedTuple

from burrow.exceptions import (
    DirectoryNotFoundInSandbox,
    FileNotFoundInSandbox,
    SandboxError,
    SandboxPathError,
)
from burrow.logging import get_logger

log = get_logger(__name__)

STANDARD_DIRECTORIES = ("memory", "tasks", "notes", "chats")
MODELS_DIRECTORY = "models"
SEARCHABLE_SUFFIXES = (".md", ".txt")

_REPEATED_SEPARATORS_RE = re.compile(r"/{2,}")


def sanitize_path(path: str) -> str:
    """Normalize a requested relative path so it cannot climb out of the root.

    Every literal ``..`` is removed, doubled separators are collapsed and
    leading separators are stripped. Backslashes count as separators.
    """
    sanitized = str(path or "").replace("\\", "/").replace("..", "")
    sanitized = _REPEATED_SEPARATORS_RE.sub("/", sanitized)
    return sanitized.lstrip("/")


@dataclass
class FileEntry:
    """A file or directory below the sandbox root."""

    name: str
    path: str
    is_directory: bool
    size: int | None = None
    modified_at: datetime | None = None
    children: list["FileEntry"] | None = field(default=None, repr=False)

    @property
    def formatted_size(self) -> str:
        if self.is_directory or self.size is None:
            return ""
        if self.size < 1000:
            return f"{self.size} bytes"
        if self.size < 1_000_000:
            return f"{self.size / 1000:.1f} KB"
        return f"{self.size / 1_000_000:.1f} MB"


class SearchMatch(NamedTuple):
    """One matching line: relative path plus the (clipped) line text."""

    path: str
    line: str


class SandboxStore:
    """CRUD, listing and text search underneath a fixed root directory."""

    def __init__(
        self,
        root: Path | str,
        search_max_results: int = 20,
        search_line_chars: int = 100,
    ):
        self.root = Path(root).expanduser().resolve()
        self.search_max_results = max(1, int(search_max_results))
        self.search_line_chars = max(1, int(search_line_chars))
        self._tree: list[FileEntry] = []
        self._tree_lock = threading.Lock()
        self._listeners: list[Callable[[list[FileEntry]], None]] = []
        self.ensure_directory_structure()
        self.refresh_tree()

    # Directory structure

    def ensure_directory_structure(self) -> None:
        """Create the root and its standard subdirectories when missing."""
        for name in (*STANDARD_DIRECTORIES, MODELS_DIRECTORY):
            (self.root / name).mkdir(parents=True, exist_ok=True)

    @property
    def models_directory(self) -> Path:
        return self.root / MODELS_DIRECTORY

    # Path handling

    @staticmethod
    def sanitize(path: str) -> str:
        return sanitize_path(path)

    def resolve(self, path: str) -> tuple[str, Path]:
        """Return ``(sanitized, absolute)`` for a requested relative path.

        Raises:
            SandboxPathError: if the resolved path (e.g. through a symlink)
                lies outside the root.
        """
        sanitized = sanitize_path(path)
        absolute = (self.root / sanitized).resolve() if sanitized else self.root
        try:
            absolute.relative_to(self.root)
        except ValueError:
            raise SandboxPathError(sanitized) from None
        return sanitized, absolute

    def _resolve_file_target(self, path: str) -> tuple[str, Path]:
        sanitized, absolute = self.resolve(path)
        if absolute == self.root:
            raise SandboxPathError(path or "/")
        return sanitized, absolute

    def _inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root)
        except (OSError, ValueError):
            return False
        return True

    def _relative(self, absolute: Path) -> str:
        return absolute.relative_to(self.root).as_posix()

    # CRUD

    def create(self, path: str, content: str) -> str:
        """Write a file, creating missing parent directories."""
        sanitized, target = self._resolve_file_target(path)
        if target.is_dir():
            raise SandboxError(f"Path is a directory: {sanitized}")
        target.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomic(target, content)
        log.info("Created file", path=sanitized, chars=len(content))
        self.refresh_tree()
        return f"Created file: {sanitized}"

    def read(self, path: str) -> str:
        sanitized, target = self.resolve(path)
        if not target.exists():
            raise FileNotFoundInSandbox(sanitized)
        if not target.is_file():
            raise SandboxError(f"Not a file: {sanitized or '/'}")
        return target.read_text(encoding="utf-8")

    def edit(self, path: str, content: str) -> str:
        """Overwrite an existing file; unlike ``create`` the file must exist."""
        sanitized, target = self._resolve_file_target(path)
        if not target.exists():
            raise FileNotFoundInSandbox(sanitized)
        if not target.is_file():
            raise SandboxError(f"Not a file: {sanitized}")
        self._write_atomic(target, content)
        log.info("Updated file", path=sanitized, chars=len(content))
        self.refresh_tree()
        return f"Updated file: {sanitized}"

    def delete(self, path: str) -> str:
        sanitized, target = self._resolve_file_target(path)
        if not target.exists():
            raise FileNotFoundInSandbox(sanitized)
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()
        log.info("Deleted path", path=sanitized)
        self.refresh_tree()
        return f"Deleted: {sanitized}"

    @staticmethod
    def _write_atomic(target: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # Listing

    def _scan(self, directory: Path, recursive: bool) -> list[FileEntry]:
        entries: list[FileEntry] = []
        try:
            children = list(directory.iterdir())
        except OSError as e:
            log.debug("Directory scan failed", directory=str(directory), error=str(e))
            return entries

        for child in children:
            if child.name.startswith("."):
                continue
            if directory == self.root and child.name == MODELS_DIRECTORY:
                continue
            if child.is_symlink() and not self._inside_root(child):
                continue
            try:
                stat = child.stat()
            except OSError:
                continue
            is_directory = child.is_dir()
            descend = recursive and is_directory and not child.is_symlink()
            entries.append(FileEntry(
                name=child.name,
                path=self._relative(child),
                is_directory=is_directory,
                size=None if is_directory else stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                children=self._scan(child, recursive=True) if descend else None,
            ))

        entries.sort(key=lambda entry: (not entry.is_directory, entry.name.casefold()))
        return entries

    def list(self, directory: str) -> list[FileEntry]:
        """List one directory's children, directories first then by name."""
        sanitized, target = self._resolve_directory(directory)
        if not target.is_dir():
            raise DirectoryNotFoundInSandbox(sanitized)
        return self._scan(target, recursive=False)

    def _resolve_directory(self, directory: str) -> tuple[str, Path]:
        if str(directory or "").strip() in ("", "."):
            return "", self.root
        return self.resolve(directory)

    def format_listing(self, directory: str) -> str:
        """Render ``list`` as the status text handed back to the model."""
        sanitized, _ = self._resolve_directory(directory)
        entries = self.list(directory)
        label = sanitized or "root"
        if not entries:
            return f"Directory '{label}' is empty."

        lines = [f"Contents of '{label}':"]
        for entry in entries:
            indicator = "📁" if entry.is_directory else "📄"
            size = f" ({entry.formatted_size})" if entry.formatted_size else ""
            lines.append(f"  {indicator} {entry.name}{size}")
        return "\n".join(lines)

    # Search

    def _iter_matches(self, directory: Path, needle: str) -> Iterator[SearchMatch]:
        for entry in self._scan(directory, recursive=False):
            absolute = self.root / entry.path
            if entry.is_directory:
                if not absolute.is_symlink():
                    yield from self._iter_matches(absolute, needle)
                continue
            if absolute.suffix.lower() not in SEARCHABLE_SUFFIXES:
                continue
            try:
                text = absolute.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                log.debug("Skipping unreadable file during search", path=entry.path, error=str(e))
                continue
            for line in text.splitlines():
                if needle in line.lower():
                    yield SearchMatch(entry.path, line[: self.search_line_chars])

    def search_report(self, query: str) -> tuple[list[SearchMatch], int]:
        """Return ``(capped matches, total match count)``."""
        needle = str(query or "").strip().lower()
        if not needle:
            return [], 0
        matches = list(self._iter_matches(self.root, needle))
        return matches[: self.search_max_results], len(matches)

    def search(self, query: str) -> list[SearchMatch]:
        """Case-insensitive substring search across text and markdown files."""
        needle = str(query or "").strip().lower()
        if not needle:
            return []
        return list(islice(self._iter_matches(self.root, needle), self.search_max_results))

    def format_search(self, query: str) -> str:
        matches, total = self.search_report(query)
        if not matches:
            return f"No matches found for '{query}'."

        lines = [f"Search results for '{query}':"]
        for match in matches:
            lines.append(f"  📄 {match.path}: {match.line.strip()}")
        if total > len(matches):
            lines.append(f"  ... and {total - len(matches)} more matches")
        return "\n".join(lines)

    # File tree

    @property
    def tree(self) -> list[FileEntry]:
        """Cached recursive listing used by UI collaborators."""
        with self._tree_lock:
            return list(self._tree)

    def refresh_tree(self) -> list[FileEntry]:
        tree = self._scan(self.root, recursive=True)
        with self._tree_lock:
            self._tree = tree
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(tree)
            except Exception as e:
                log.warning("Tree listener failed", error=str(e))
        return tree

    def add_listener(self, listener: Callable[[list[FileEntry]], None]) -> None:
        """Register a callback invoked with the rebuilt tree after mutations."""
        with self._tree_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[list[FileEntry]], None]) -> None:
        with self._tree_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
