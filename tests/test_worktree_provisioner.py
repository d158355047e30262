from __future__ import annotations

import errno
import json
import re
import shutil
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from termnexus.worktree import WorktreeProvisioner, parse_worktree_porcelain, sanitize_branch
from termnexus.worktree.provisioner import PENDING_FILE_NAME, read_gitdir

STAMP = 1_700_000_000.0


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _linked_worktree(base: Path, main: Path, name: str, *, metadata: bool = True) -> Path:
    """Lay out ``base/name`` like a linked worktree of ``main``."""
    gitdir = main / ".git" / "worktrees" / name
    if metadata:
        gitdir.mkdir(parents=True, exist_ok=True)
    path = base / name
    path.mkdir(parents=True)
    (path / ".git").write_text(f"gitdir: {gitdir}\n", encoding="utf-8")
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    return path


def _busy(_path: Path) -> None:
    raise OSError(errno.EBUSY, "Device or resource busy")


def test_sanitize_branch_replaces_unsafe_characters() -> None:
    assert sanitize_branch("feature/add x") == "feature_add_x"
    assert sanitize_branch("fix-1_ok") == "fix-1_ok"
    assert sanitize_branch("  ") == "worktree"


def test_create_worktree_for_new_branch_uses_dash_b(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        if "rev-parse" in cmd:
            return _cp(1)
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path / "scratch", runner=runner, clock=lambda: STAMP)
    result = provisioner.create_worktree("/repo", "feature-x")

    assert result.success is True
    assert re.search(r"feature-x-\d+$", result.path)
    assert commands[0][-1] == "refs/heads/feature-x"
    assert commands[1] == ["git", "-C", "/repo", "worktree", "add", "-b", "feature-x", result.path]
    assert [record.path for record in provisioner.active_worktrees] == [result.path]


def test_create_worktree_attaches_existing_branch(tmp_path: Path) -> None:
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, clock=lambda: STAMP)
    result = provisioner.create_worktree("/repo", "main")

    assert result.success is True
    assert commands[-1] == ["git", "-C", "/repo", "worktree", "add", result.path, "main"]


def test_create_worktree_bumps_timestamp_until_name_is_free(tmp_path: Path) -> None:
    stamp = int(STAMP * 1000)
    (tmp_path / f"feature_x-{stamp}").mkdir()
    (tmp_path / f"feature_x-{stamp + 1}").mkdir()

    provisioner = WorktreeProvisioner(tmp_path, runner=lambda *args, **kwargs: _cp(0), clock=lambda: STAMP)
    result = provisioner.create_worktree("/repo", "feature/x")

    assert Path(result.path).name == f"feature_x-{stamp + 2}"


def test_concurrent_creates_with_colliding_names_get_distinct_directories(tmp_path: Path) -> None:
    both_adding = threading.Barrier(2)

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if "rev-parse" in cmd:
            return _cp(1)
        both_adding.wait(timeout=5)
        target = Path(cmd[-1])
        if target.exists():
            return _cp(128, stderr=f"fatal: '{target}' already exists")
        target.mkdir()
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, clock=lambda: STAMP)
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda branch: provisioner.create_worktree("/repo", branch), ["a/b", "a_b"]))

    assert [result.success for result in results] == [True, True]
    paths = sorted(result.path for result in results)
    stamp = int(STAMP * 1000)
    assert paths == [str(tmp_path / f"a_b-{stamp}"), str(tmp_path / f"a_b-{stamp + 1}")]
    assert all(Path(path).is_dir() for path in paths)
    assert sorted(record.path for record in provisioner.active_worktrees) == paths


def test_failed_create_only_discards_its_own_target(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if "rev-parse" in cmd:
            return _cp(1)
        if cmd[-1].startswith(str(tmp_path / "broken")):
            Path(cmd[-1]).mkdir()
            return _cp(128, stderr="fatal: checkout failed")
        Path(cmd[-1]).mkdir()
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, clock=lambda: STAMP)
    kept = provisioner.create_worktree("/repo", "kept")
    failed = provisioner.create_worktree("/repo", "broken")

    assert failed.success is False
    assert Path(kept.path).is_dir()
    assert list(tmp_path.glob("broken-*")) == []
    assert [record.path for record in provisioner.active_worktrees] == [kept.path]


def test_create_worktree_failure_leaves_nothing_registered(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if "add" in cmd:
            Path(cmd[-1] if "-b" in cmd else cmd[-2]).mkdir(parents=True)
            return _cp(128, stderr="fatal: 'main' is already checked out")
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, clock=lambda: STAMP)
    result = provisioner.create_worktree("/repo", "main")

    assert result.success is False
    assert "already checked out" in result.error
    assert provisioner.active_worktrees == []
    assert list(tmp_path.iterdir()) == []


def test_create_worktree_requires_branch(tmp_path: Path) -> None:
    provisioner = WorktreeProvisioner(tmp_path, runner=lambda *args, **kwargs: _cp(0))
    assert provisioner.create_worktree("/repo", " ").success is False


def test_remove_worktree_runs_forced_remove_from_main_repo(tmp_path: Path) -> None:
    main = tmp_path / "main"
    base = tmp_path / "scratch"
    path = _linked_worktree(base, main, "feature-1")
    commands: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        commands.append(cmd)
        shutil.rmtree(path)
        return _cp(0)

    removed_trees: list[Path] = []
    provisioner = WorktreeProvisioner(base, runner=runner, remove_tree=removed_trees.append)
    result = provisioner.remove_worktree(path)

    assert result.success is True
    assert commands == [["git", "-C", str(main), "worktree", "remove", "--force", str(path)]]
    assert removed_trees == []


def test_remove_worktree_falls_back_to_filesystem_delete(tmp_path: Path) -> None:
    path = _linked_worktree(tmp_path / "scratch", tmp_path / "main", "feature-2")
    provisioner = WorktreeProvisioner(
        tmp_path / "scratch",
        runner=lambda *args, **kwargs: _cp(1, stderr="fatal: validation failed"),
    )

    result = provisioner.remove_worktree(path)

    assert result.success is True
    assert not path.exists()
    assert provisioner.pending_deletions == []


def test_remove_worktree_schedules_cleanup_when_everything_fails(tmp_path: Path) -> None:
    base = tmp_path / "scratch"
    path = _linked_worktree(base, tmp_path / "main", "feature-3")
    provisioner = WorktreeProvisioner(base, runner=lambda *args, **kwargs: _cp(1), remove_tree=_busy)

    result = provisioner.remove_worktree(path)

    assert result.success is False
    assert "scheduled for cleanup" in result.error
    assert provisioner.pending_deletions == [str(path)]
    assert json.loads((base / PENDING_FILE_NAME).read_text(encoding="utf-8")) == [str(path)]


def test_pending_deletions_are_retried_on_next_startup(tmp_path: Path) -> None:
    base = tmp_path / "scratch"
    path = _linked_worktree(base, tmp_path / "main", "feature-4")
    first = WorktreeProvisioner(base, runner=lambda *args, **kwargs: _cp(1), remove_tree=_busy)
    first.remove_worktree(path)
    first.shutdown()

    second = WorktreeProvisioner(base, runner=lambda *args, **kwargs: _cp(1))
    reclaimed = second.initialize()

    assert str(path) in reclaimed
    assert not path.exists()
    assert second.pending_deletions == []
    assert not (base / PENDING_FILE_NAME).exists()


def test_path_is_never_both_active_and_pending(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if "add" in cmd:
            Path(cmd[-1]).mkdir(parents=True)
        return _cp(1) if "rev-parse" in cmd or "remove" in cmd else _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, remove_tree=_busy, clock=lambda: STAMP)
    created = provisioner.create_worktree("/repo", "topic")
    provisioner.remove_worktree(created.path)

    assert provisioner.active_worktrees == []
    assert provisioner.pending_deletions == [created.path]


def test_cleanup_orphaned_removes_unlinked_and_stale_directories(tmp_path: Path) -> None:
    main = tmp_path / "main"
    base = tmp_path / "scratch"
    healthy = _linked_worktree(base, main, "healthy")
    stale = _linked_worktree(base, main, "stale", metadata=False)
    unlinked = base / "unlinked"
    unlinked.mkdir()
    (base / "notes.txt").write_text("keep", encoding="utf-8")

    provisioner = WorktreeProvisioner(base, runner=lambda *args, **kwargs: _cp(0))
    cleaned = provisioner.cleanup_orphaned()

    assert sorted(cleaned) == sorted([str(stale), str(unlinked)])
    assert healthy.exists()
    assert (base / "notes.txt").exists()
    assert provisioner.cleanup_orphaned() == []


def test_cleanup_orphaned_skips_active_worktrees(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if "add" in cmd:
            Path(cmd[cmd.index("add") + 1]).mkdir(parents=True)
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner, clock=lambda: STAMP)
    created = provisioner.create_worktree("/repo", "main")

    assert provisioner.cleanup_orphaned() == []
    assert Path(created.path).exists()


def test_cleanup_orphaned_moves_undeletable_directories_to_pending(tmp_path: Path) -> None:
    (tmp_path / "locked").mkdir()
    provisioner = WorktreeProvisioner(tmp_path, runner=lambda *args, **kwargs: _cp(0), remove_tree=_busy)

    assert provisioner.cleanup_orphaned() == []
    assert provisioner.pending_deletions == [str(tmp_path / "locked")]


def test_read_gitdir_resolves_relative_links(tmp_path: Path) -> None:
    worktree = tmp_path / "wt"
    worktree.mkdir()
    (worktree / ".git").write_text("gitdir: ../main/.git/worktrees/wt\n", encoding="utf-8")

    assert read_gitdir(worktree) == (tmp_path / "main" / ".git" / "worktrees" / "wt").resolve()
    assert read_gitdir(tmp_path / "missing") is None


def test_parse_worktree_porcelain_strips_refs_and_defaults_detached() -> None:
    stdout = (
        "worktree /repo\nHEAD aaa111\nbranch refs/heads/main\n\n"
        "worktree /tmp/wt\nHEAD bbb222\ndetached\n"
    )

    infos = parse_worktree_porcelain(stdout)

    assert [(info.path, info.branch, info.head) for info in infos] == [
        ("/repo", "main", "aaa111"),
        ("/tmp/wt", "detached", "bbb222"),
    ]


def test_list_worktrees_and_is_git_repo_use_runner(tmp_path: Path) -> None:
    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        if cmd[-1] == "--porcelain":
            return _cp(0, "worktree /repo\nHEAD abc\nbranch refs/heads/dev\n")
        if cmd[-1] == "--git-dir":
            return _cp(0, ".git\n") if cmd[2] == "/repo" else _cp(128)
        return _cp(0)

    provisioner = WorktreeProvisioner(tmp_path, runner=runner)

    assert provisioner.is_git_repo("/repo") is True
    assert provisioner.is_git_repo("/elsewhere") is False
    assert [info.branch for info in provisioner.list_worktrees("/repo")] == ["dev"]


def test_list_worktrees_returns_empty_when_git_fails(tmp_path: Path) -> None:
    provisioner = WorktreeProvisioner(tmp_path, runner=lambda *args, **kwargs: _cp(128))
    assert provisioner.list_worktrees("/repo") == []
