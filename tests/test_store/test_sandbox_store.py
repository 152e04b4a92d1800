import os
from pathlib import Path

import pytest

from burrow.exceptions import (
    DirectoryNotFoundInSandbox,
    FileNotFoundInSandbox,
    SandboxPathError,
)
from burrow.store import STANDARD_DIRECTORIES, FileEntry, SandboxStore, sanitize_path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("../../etc/passwd", "etc/passwd"),
        ("notes//a.md", "notes/a.md"),
        ("\\\\x\\..\\y", "x/y"),
        ("/abs/path.md", "abs/path.md"),
        ("memory/ok.md", "memory/ok.md"),
        ("", ""),
    ],
)
def test_sanitize_path(raw: str, expected: str):
    assert sanitize_path(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["../../a", "..\\..\\b", "//x//..//..//y", "a/./../b", "....//c", "/\\/\\d"],
)
def test_sanitize_output_never_climbs_or_starts_at_root(raw: str):
    sanitized = sanitize_path(raw)
    assert ".." not in sanitized
    assert "//" not in sanitized
    assert not sanitized.startswith("/")


def test_store_creates_standard_directories(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    for name in STANDARD_DIRECTORIES:
        assert (store.root / name).is_dir()
    assert store.models_directory.is_dir()


def test_create_confines_traversal_to_root(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    message = store.create("../../etc/passwd", "x")

    assert message == "Created file: etc/passwd"
    assert (store.root / "etc" / "passwd").read_text(encoding="utf-8") == "x"
    assert not (tmp_path / "etc").exists()


def test_create_then_read_round_trip(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    assert store.create("notes/hello.md", "# Hi") == "Created file: notes/hello.md"
    assert store.read("notes/hello.md") == "# Hi"


def test_create_leaves_no_temporary_files(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    store.create("notes/a.md", "one")
    store.create("notes/a.md", "two")

    assert sorted(os.listdir(store.root / "notes")) == ["a.md"]
    assert store.read("notes/a.md") == "two"


def test_read_missing_file_raises_not_found(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    with pytest.raises(FileNotFoundInSandbox, match="File not found: notes/missing.md"):
        store.read("notes/missing.md")


def test_edit_requires_existing_file(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    with pytest.raises(FileNotFoundInSandbox):
        store.edit("notes/new.md", "content")
    assert not (store.root / "notes" / "new.md").exists()

    store.create("notes/new.md", "old")
    assert store.edit("notes/new.md", "new") == "Updated file: notes/new.md"
    assert store.read("notes/new.md") == "new"


def test_delete_file_and_directory(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    store.create("notes/a.md", "a")
    store.create("projects/x/b.md", "b")

    assert store.delete("notes/a.md") == "Deleted: notes/a.md"
    assert store.delete("projects") == "Deleted: projects"
    assert not (store.root / "projects").exists()

    with pytest.raises(FileNotFoundInSandbox):
        store.delete("notes/a.md")


def test_delete_root_is_rejected(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    with pytest.raises(SandboxPathError):
        store.delete("..")
    assert store.root.is_dir()


def test_symlink_escape_is_rejected(tmp_path: Path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret", encoding="utf-8")
    store = SandboxStore(tmp_path / "sandbox")
    (store.root / "notes" / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(SandboxPathError):
        store.read("notes/link/secret.txt")
    assert [entry.name for entry in store.list("notes")] == []


def test_list_orders_directories_first_and_hides_models(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    store.create("zeta.md", "z")
    store.create("Alpha.txt", "a")
    store.create(".hidden.md", "h")
    (store.models_directory / "model.gguf").write_bytes(b"\0")

    names = [entry.name for entry in store.list(".")]

    assert names == ["chats", "memory", "notes", "tasks", "Alpha.txt", "zeta.md"]
    assert store.list("") == store.list(".")


def test_list_missing_directory_raises(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")

    with pytest.raises(DirectoryNotFoundInSandbox, match="Directory not found: nope"):
        store.list("nope")


def test_format_listing(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    store.create("notes/a.md", "12345")

    assert store.format_listing("notes") == "Contents of 'notes':\n  📄 a.md (5 bytes)"
    assert store.format_listing("tasks") == "Directory 'tasks' is empty."
    assert store.format_listing(".").startswith("Contents of 'root':\n  📁 chats")


@pytest.mark.parametrize(
    ("size", "expected"),
    [(999, "999 bytes"), (1500, "1.5 KB"), (2_500_000, "2.5 MB")],
)
def test_formatted_size(size: int, expected: str):
    assert FileEntry(name="f", path="f", is_directory=False, size=size).formatted_size == expected


def test_search_is_case_insensitive_and_limited_to_text_files(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    store.create("notes/a.md", "Buy MILK today\nnothing here")
    store.create("notes/b.txt", "milk again")
    store.create("notes/c.json", '{"milk": 1}')

    matches = store.search("milk")

    assert sorted((m.path, m.line) for m in matches) == [
        ("notes/a.md", "Buy MILK today"),
        ("notes/b.txt", "milk again"),
    ]
    assert store.search("   ") == []


def test_search_caps_results_and_reports_remainder(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox", search_max_results=3, search_line_chars=10)
    store.create("notes/many.md", "\n".join(f"needle line number {i}" for i in range(5)))

    matches = store.search("needle")
    assert len(matches) == 3
    assert all(len(match.line) <= 10 for match in matches)

    report = store.format_search("needle")
    assert report.startswith("Search results for 'needle':")
    assert report.endswith("  ... and 2 more matches")
    assert store.format_search("absent") == "No matches found for 'absent'."


def test_tree_listeners_receive_rebuilt_tree(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    seen: list[list[str]] = []

    def listener(tree):
        notes = next(entry for entry in tree if entry.name == "notes")
        seen.append([child.name for child in notes.children or []])

    def broken(tree):
        raise RuntimeError("boom")

    store.add_listener(broken)
    store.add_listener(listener)
    store.create("notes/a.md", "a")
    store.remove_listener(listener)
    store.delete("notes/a.md")

    assert seen == [["a.md"]]
    assert all(entry.name != "models" for entry in store.tree)


def test_symlink_loop_inside_root_is_not_followed(tmp_path: Path):
    store = SandboxStore(tmp_path / "sandbox")
    store.create("notes/a.md", "loop marker")
    (store.root / "notes" / "loop").symlink_to(store.root / "notes", target_is_directory=True)

    tree = store.refresh_tree()
    notes = next(entry for entry in tree if entry.name == "notes")
    loop = next(entry for entry in notes.children or [] if entry.name == "loop")

    assert loop.is_directory
    assert loop.children is None
    store.create("notes/b.md", "after")
    assert [(m.path, m.line) for m in store.search("loop marker")] == [("notes/a.md", "loop marker")]
