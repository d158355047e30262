"""Isolated git worktree provisioning with orphan and failure recovery."""

from __future__ import annotations

import json
import logging as py_logging
import re
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from termnexus.errors import describe_failure

logger = py_logging.getLogger(__name__)

_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9_-]")
_GITDIR_PATTERN = re.compile(r"gitdir:\s*(.+)")
PENDING_FILE_NAME = ".pending-deletions.json"
SCHEDULED_MESSAGE = "Folder locked, scheduled for cleanup"


class SubprocessRunner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        capture_output: bool = False,
        text: bool = False,
        check: bool = False,
    ) -> subprocess.CompletedProcess[str]: ...


TreeRemover = Callable[[Path], None]


@dataclass(frozen=True)
class WorktreeRecord:
    path: str
    repo_path: str
    branch: str


@dataclass(frozen=True)
class WorktreeInfo:
    path: str
    branch: str
    head: str


@dataclass(frozen=True)
class WorktreeResult:
    success: bool
    path: str = ""
    error: str = ""


def sanitize_branch(branch: str) -> str:
    cleaned = _SANITIZE_PATTERN.sub("_", branch.strip())
    return cleaned or "worktree"


def read_gitdir(worktree_path: Path) -> Path | None:
    """Target of a linked worktree's ``.git`` file, or None when absent/unreadable."""
    git_file = worktree_path / ".git"
    if not git_file.is_file():
        return None
    try:
        content = git_file.read_text(encoding="utf-8")
    except OSError:
        return None
    match = _GITDIR_PATTERN.search(content)
    if match is None:
        return None
    gitdir = Path(match.group(1).strip())
    if not gitdir.is_absolute():
        gitdir = (worktree_path / gitdir).resolve()
    return gitdir


def main_repo_for_gitdir(gitdir: Path) -> Path:
    # <main>/.git/worktrees/<name> -> <main>
    return gitdir.parent.parent.parent


def parse_worktree_porcelain(stdout: str) -> list[WorktreeInfo]:
    worktrees: list[WorktreeInfo] = []
    for block in re.split(r"\n\s*\n", stdout.strip()):
        path = head = branch = ""
        for raw_line in block.splitlines():
            line = raw_line.strip()
            if line.startswith("worktree "):
                path = line.split(" ", 1)[1].strip()
            elif line.startswith("HEAD "):
                head = line.split(" ", 1)[1].strip()
            elif line.startswith("branch "):
                branch = line.split(" ", 1)[1].strip().removeprefix("refs/heads/")
        if path and head:
            worktrees.append(WorktreeInfo(path=path, branch=branch or "detached", head=head))
    return worktrees


class WorktreeProvisioner:
    """Creates and removes worktrees under one scratch root.

    Every mutating operation returns a result object instead of raising. A
    path is tracked either as an active worktree or as a pending deletion,
    never both.
    """

    def __init__(
        self,
        base_dir: str | Path,
        *,
        runner: SubprocessRunner = subprocess.run,
        remove_tree: TreeRemover = shutil.rmtree,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir)
        self._runner = runner
        self._remove_tree = remove_tree
        self._clock = clock
        self._active: dict[str, WorktreeRecord] = {}
        self._pending: set[str] = set()
        # Targets chosen by in-flight creates; worker threads share this provisioner.
        self._reserved: set[str] = set()
        self._lock = threading.Lock()

    @property
    def pending_file(self) -> Path:
        return self.base_dir / PENDING_FILE_NAME

    @property
    def pending_deletions(self) -> list[str]:
        return sorted(self._pending)

    @property
    def active_worktrees(self) -> list[WorktreeRecord]:
        return [self._active[key] for key in sorted(self._active)]

    def ensure_base_dir(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Could not create worktree root path=%s error=%s", self.base_dir, exc)

    def initialize(self) -> list[str]:
        self.ensure_base_dir()
        self._load_pending()
        reclaimed = self.retry_pending_deletions()
        reclaimed.extend(self.cleanup_orphaned())
        if reclaimed:
            logger.info("Reclaimed %s abandoned worktree directories", len(reclaimed))
        return reclaimed

    def shutdown(self) -> None:
        self._save_pending()

    def _git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return self._runner(["git", *args], capture_output=True, text=True, check=False)

    def _is_taken(self, target: Path) -> bool:
        key = str(target)
        return key in self._reserved or key in self._active or key in self._pending or target.exists()

    def _next_target(self, branch: str) -> Path:
        """Pick a free directory name and reserve it until the create finishes."""
        stamp = int(self._clock() * 1000)
        safe = sanitize_branch(branch)
        with self._lock:
            target = self.base_dir / f"{safe}-{stamp}"
            while self._is_taken(target):
                stamp += 1
                target = self.base_dir / f"{safe}-{stamp}"
            self._reserved.add(str(target))
        return target

    def _release(self, target: Path, record: WorktreeRecord | None = None) -> None:
        with self._lock:
            self._reserved.discard(str(target))
            if record is not None:
                self._active[record.path] = record

    def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        result = self._git(["-C", str(repo_path), "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])
        return result.returncode == 0

    def create_worktree(self, repo_path: str | Path, branch: str) -> WorktreeResult:
        if not branch.strip():
            return WorktreeResult(success=False, error="Branch name is required.")
        self.ensure_base_dir()
        target = self._next_target(branch)
        try:
            if self.branch_exists(repo_path, branch):
                cmd = ["-C", str(repo_path), "worktree", "add", str(target), branch]
            else:
                cmd = ["-C", str(repo_path), "worktree", "add", "-b", branch, str(target)]
            logger.debug("Adding worktree repo=%s branch=%s target=%s", repo_path, branch, target)
            result = self._git(cmd)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("git worktree add could not run repo=%s error=%s", repo_path, exc)
            self._discard_partial(target)
            self._release(target)
            return WorktreeResult(success=False, error=describe_failure(exc, "Failed to create worktree"))

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error("git worktree add failed repo=%s branch=%s stderr=%s", repo_path, branch, stderr)
            # The target is reserved by this call, so anything there is our own leftover.
            self._discard_partial(target)
            self._release(target)
            return WorktreeResult(success=False, error=stderr or "Failed to create worktree")

        record = WorktreeRecord(path=str(target), repo_path=str(repo_path), branch=branch)
        self._release(target, record)
        logger.info("Created worktree path=%s branch=%s", target, branch)
        return WorktreeResult(success=True, path=record.path)

    def _discard_partial(self, target: Path) -> None:
        if not target.exists():
            return
        try:
            self._remove_tree(target)
        except OSError as exc:
            logger.warning("Could not remove partial worktree path=%s error=%s", target, exc)

    def _delete_directory(self, path: Path) -> bool:
        try:
            self._remove_tree(path)
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning("Filesystem delete failed path=%s error=%s", path, exc)
            return False
        return True

    def _git_remove(self, path: Path) -> bool:
        gitdir = read_gitdir(path)
        if gitdir is None:
            logger.debug("No git link file; skipping git-level remove path=%s", path)
            return False
        main_repo = main_repo_for_gitdir(gitdir)
        try:
            result = self._git(["-C", str(main_repo), "worktree", "remove", "--force", str(path)])
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("git worktree remove could not run path=%s error=%s", path, exc)
            return False
        if result.returncode != 0:
            logger.warning(
                "git worktree remove failed path=%s stderr=%s",
                path,
                (result.stderr or "").strip(),
            )
            return False
        return True

    def remove_worktree(self, path: str | Path) -> WorktreeResult:
        target = Path(path)
        key = str(target)
        git_removed = self._git_remove(target)
        removed = (git_removed and not target.exists()) or self._delete_directory(target)

        with self._lock:
            self._active.pop(key, None)
        if removed:
            self._pending.discard(key)
            logger.info("Removed worktree path=%s", target)
            return WorktreeResult(success=True, path=key)

        self._pending.add(key)
        self._save_pending()
        logger.warning("Worktree removal deferred path=%s", target)
        return WorktreeResult(success=False, path=key, error=f"{SCHEDULED_MESSAGE}: {key}")

    def _is_orphan(self, entry: Path) -> bool:
        gitdir = read_gitdir(entry)
        if gitdir is None:
            return True
        return not gitdir.exists()

    def cleanup_orphaned(self) -> list[str]:
        cleaned: list[str] = []
        try:
            entries = sorted(self.base_dir.iterdir())
        except FileNotFoundError:
            return cleaned
        except OSError as exc:
            logger.error("Could not scan worktree root path=%s error=%s", self.base_dir, exc)
            return cleaned

        for entry in entries:
            key = str(entry)
            if key in self._active or key in self._reserved or not entry.is_dir():
                continue
            if not self._is_orphan(entry):
                continue
            if self._delete_directory(entry):
                self._pending.discard(key)
                cleaned.append(key)
                logger.info("Removed orphaned worktree path=%s", entry)
            else:
                self._pending.add(key)
        if cleaned:
            self._save_pending()
        return cleaned

    def retry_pending_deletions(self) -> list[str]:
        deleted: list[str] = []
        for key in sorted(self._pending):
            if self._delete_directory(Path(key)):
                self._pending.discard(key)
                deleted.append(key)
        if deleted:
            logger.info("Deleted %s pending worktree directories", len(deleted))
            self._save_pending()
        return deleted

    def is_git_repo(self, path: str | Path) -> bool:
        try:
            result = self._git(["-C", str(path), "rev-parse", "--git-dir"])
        except (OSError, subprocess.SubprocessError):
            return False
        return result.returncode == 0

    def list_worktrees(self, repo_path: str | Path) -> list[WorktreeInfo]:
        try:
            result = self._git(["-C", str(repo_path), "worktree", "list", "--porcelain"])
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Worktree listing could not run repo=%s error=%s", repo_path, exc)
            return []
        if result.returncode != 0:
            return []
        return parse_worktree_porcelain(result.stdout or "")

    def _load_pending(self) -> None:
        try:
            raw = json.loads(self.pending_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable pending deletions file=%s error=%s", self.pending_file, exc)
            return
        if isinstance(raw, list):
            self._pending.update(str(item) for item in raw if isinstance(item, str) and item not in self._active)

    def _save_pending(self) -> None:
        try:
            if self._pending:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                self.pending_file.write_text(json.dumps(sorted(self._pending)), encoding="utf-8")
            elif self.pending_file.exists():
                self.pending_file.unlink()
        except OSError as exc:
            logger.warning("Could not persist pending deletions file=%s error=%s", self.pending_file, exc)
