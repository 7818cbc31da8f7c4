from pathlib import Path

import pytest

from autokanban.errors import TaskStoreError
from autokanban.state.tasks import (
    COLUMNS,
    Task,
    TaskStore,
    branch_name_for,
    normalize_task_id,
    slugify,
)


def _store(tmp_path: Path) -> TaskStore:
    store = TaskStore(tmp_path / "kanban")
    store.ensure_layout()
    return store


def test_slugify_strips_accents_and_truncates() -> None:
    assert slugify("Añadir autenticación JWT!") == "anadir-autenticacion-jwt"
    assert slugify("  Many   spaces -- here ") == "many-spaces-here"
    assert slugify("a" * 20 + " " + "b" * 20, max_length=22) == "a" * 20 + "-b"
    assert slugify("") == ""


def test_ids_compare_zero_padded() -> None:
    assert normalize_task_id(7) == "007"
    assert normalize_task_id("7") == "007"
    assert normalize_task_id("1234") == "1234"
    assert normalize_task_id("T-1") == "T-1"


def test_branch_name_uses_task_type() -> None:
    assert branch_name_for("fix", "Broken login redirect") == "fix/broken-login-redirect"
    assert branch_name_for("architecture", "Scaffold API") == "feature/scaffold-api"


def test_create_and_get_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create("Add login form", content="## Acceptance\n- form renders", labels=["ui"])
    second = store.create("Wire session API", type="fix", depends_on=["1"], priority="high")

    assert first.id == "001"
    assert second.id == "002"
    assert first.path == store.root / "todo" / "001-add-login-form.md"

    loaded = store.get(2)
    assert loaded.title == "Wire session API"
    assert loaded.type == "fix"
    assert loaded.priority == "high"
    assert loaded.depends_on == ["001"]
    assert loaded.branch == "fix/wire-session-api"
    assert loaded.status == "todo"
    assert store.get("001").content == "## Acceptance\n- form renders"
    assert store.get("001").labels == ["ui"]


def test_front_matter_uses_camel_case_keys(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create("Add search", depends_on=["4"])
    store.update(task.id, last_error="boom", last_error_phase="review", retry_count=2)

    raw = (store.root / "todo" / "001-add-search.md").read_text(encoding="utf-8")
    assert "dependsOn:" in raw
    assert "lastErrorPhase: review" in raw
    assert "retryCount: 2" in raw
    assert "status:" not in raw


def test_parse_external_file_keeps_unknown_keys(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.root / "todo" / "012-external.md"
    path.write_text(
        "---\ntitle: External card\nassignee: sam\ndependsOn: 3\nstatus: done\n---\n\nBody text\n",
        encoding="utf-8",
    )

    task = store.get(12)
    assert task.id == "012"
    assert task.status == "todo"
    assert task.depends_on == ["003"]
    assert task.extra == {"assignee": "sam"}
    assert task.content == "Body text"

    store.update(12, iterations=2)
    assert "assignee: sam" in path.read_text(encoding="utf-8")


def test_move_relocates_file_and_sets_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.create("Ship it")

    moved = store.move(task.id, "in_progress", started_at="2026-01-01T00:00:00+00:00")

    assert moved.status == "in_progress"
    assert not (store.root / "todo" / "001-ship-it.md").exists()
    assert (store.root / "in_progress" / "001-ship-it.md").exists()
    reloaded = store.get("001")
    assert reloaded.status == "in_progress"
    assert reloaded.started_at == "2026-01-01T00:00:00+00:00"
    assert store.counts() == {
        "backlog": 0,
        "todo": 0,
        "in_progress": 1,
        "review": 0,
        "done": 0,
    }


def test_list_is_in_file_order_and_skips_broken_files(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("Second")
    store.create("Third")
    (store.root / "todo" / "000-broken.md").write_text("no front matter here", encoding="utf-8")

    titles = [task.title for task in store.list("todo")]
    assert titles == ["Second", "Third"]
    assert [task.status for task in store.list()] == ["todo", "todo"]


def test_invalid_column_and_missing_task(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("Only task")

    with pytest.raises(TaskStoreError):
        store.move("001", "archived")
    with pytest.raises(TaskStoreError):
        store.get("999")
    with pytest.raises(TaskStoreError):
        store.create("Bad type", type="epic")
    with pytest.raises(TaskStoreError):
        store.update("001", colour="red")


def test_delete_and_next_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create("One")
    store.create("Two", status="backlog")
    store.delete("001")

    assert store.find("001") is None
    assert store.next_id() == "003"
    assert set(COLUMNS) == {path.name for path in store.root.iterdir() if path.is_dir()}


def test_render_parse_roundtrip_in_memory() -> None:
    task = Task(id="5", title="Render me", labels=["a", "b"], content="Hello")
    parsed = Task.parse(task.render(), status="review")

    assert parsed.id == "005"
    assert parsed.labels == ["a", "b"]
    assert parsed.status == "review"
    assert parsed.content == "Hello"
