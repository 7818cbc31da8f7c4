from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from autokanban.config import GitConfig
from autokanban.errors import GitLifecycleError

log = logging.getLogger(__name__)

STASH_LABEL = "autokanban-pre-checkout"
PARKED_LABEL = "autokanban-verify"


@dataclass(slots=True)
class VerifyReport:
    clean: bool
    branch: str
    dirty: int
    fixed: bool


@dataclass(slots=True)
class FinalizeResult:
    committed: bool
    pushed: bool
    merged: bool
    branch_deleted: bool


class GitLifecycle:
    """Branch discipline around one task: every path ends clean and on the base branch."""

    def __init__(
        self,
        repo_root: Path,
        config: GitConfig | None = None,
        *,
        ignore_paths: Iterable[Path] = (),
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or GitConfig()
        self.ignore_paths = [Path(path) for path in ignore_paths]
        self._stashed = False
        self._task_branch: str | None = None

    @property
    def base_branch(self) -> str:
        return self.config.base_branch

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitLifecycleError("git executable not found.", command=command) from exc
        if check and proc.returncode != 0:
            raise GitLifecycleError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {' '.join(args)} failed",
                command=command,
            )
        return proc

    def is_git_repo(self) -> bool:
        if not self.repo_root.is_dir():
            return False
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def exclude_local_paths(self) -> None:
        """Keep engine-owned directories inside the work tree out of status and clean."""
        relative: list[str] = []
        for path in self.ignore_paths:
            try:
                rel = path.resolve().relative_to(self.repo_root)
            except ValueError:
                continue
            if str(rel) not in {"", "."}:
                relative.append(f"/{rel.as_posix()}/")
        if not relative:
            return
        git_dir = Path(self._run_git(["rev-parse", "--git-dir"]).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_root / git_dir
        exclude_file = git_dir / "info" / "exclude"
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        missing = [line for line in relative if line not in existing.splitlines()]
        if missing:
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            exclude_file.write_text(existing + prefix + "\n".join(missing) + "\n", encoding="utf-8")

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def dirty_count(self) -> int:
        output = self._run_git(["status", "--porcelain"]).stdout
        return len([line for line in output.splitlines() if line.strip()])

    def has_conflicts(self) -> bool:
        output = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False).stdout
        return bool(output.strip())

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def _merge_in_progress(self) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", "MERGE_HEAD"], check=False)
        return proc.returncode == 0

    def park_changes(self, label: str) -> bool:
        """Move every pending change, untracked files included, into a stash named ``label``."""
        dirty = self.dirty_count()
        if dirty == 0:
            return False
        proc = self._run_git(["stash", "push", "-u", "-m", label], check=False)
        if proc.returncode != 0:
            log.warning("Could not stash %d change(s); discarding them: %s", dirty, proc.stderr.strip())
            self.hard_reset()
            return False
        log.info("Stashed %d pending change(s) as '%s'", dirty, label)
        return True

    def stash_if_dirty(self) -> bool:
        self._stashed = self.park_changes(STASH_LABEL)
        return self._stashed

    def find_stash(self, label: str) -> str | None:
        listing = self._run_git(["stash", "list"], check=False).stdout
        for line in listing.splitlines():
            ref, _, message = line.partition(":")
            if message.rstrip().endswith(label):
                return ref
        return None

    def release_stash(self) -> str | None:
        """Forget the pre-task stash and return the ref the operator's changes live in."""
        if not self._stashed:
            return None
        self._stashed = False
        return self.find_stash(STASH_LABEL)

    def checkout(self, branch: str) -> None:
        proc = self._run_git(["checkout", branch], check=False)
        if proc.returncode == 0:
            return
        if self.branch_exists(branch):
            raise GitLifecycleError(proc.stderr.strip() or f"Could not check out {branch}")
        fetched = self._run_git(["fetch", self.config.remote, branch], check=False)
        if fetched.returncode == 0:
            self._run_git(["checkout", "-b", branch, f"{self.config.remote}/{branch}"])
            return
        log.info("Branch '%s' does not exist; creating it from HEAD", branch)
        self._run_git(["checkout", "-b", branch])

    def create_branch(self, branch: str) -> None:
        if self.branch_exists(branch):
            log.warning("Branch '%s' already exists; recreating it", branch)
            self._run_git(["branch", "-D", branch])
        self._run_git(["checkout", "-b", branch])
        self._task_branch = branch

    def delete_branch(self, branch: str, force: bool = False) -> bool:
        if not self.branch_exists(branch):
            return False
        proc = self._run_git(["branch", "-D" if force else "-d", branch], check=False)
        if proc.returncode != 0:
            log.warning("Could not delete branch '%s': %s", branch, proc.stderr.strip())
            return False
        return True

    def hard_reset(self) -> None:
        self._run_git(["reset", "--hard", "HEAD"])
        self._run_git(["clean", "-fd"])

    def prepare(self, branch: str) -> None:
        self.exclude_local_paths()
        self.stash_if_dirty()
        self.checkout(self.base_branch)
        self.create_branch(branch)

    def ensure_branch(self, branch: str) -> bool:
        """Return to ``branch`` if the agent switched away, carrying its stray work along."""
        actual = self.current_branch()
        if actual == branch:
            return False
        log.warning("Agent left the work tree on '%s' (expected '%s')", actual, branch)
        dirty = self.dirty_count()
        if dirty:
            self._run_git(["add", "-A"])
            self._run_git(["commit", "-m", f"wip: agent changes on {actual}"])
        self._run_git(["checkout", branch])
        if dirty and actual != "HEAD":
            merged = self._run_git(["merge", "--no-edit", actual], check=False)
            if merged.returncode != 0:
                self._run_git(["merge", "--abort"], check=False)
                log.warning("Could not merge stray work from '%s'; continuing without it", actual)
        return True

    def _has_staged_changes(self) -> bool:
        proc = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode == 1

    def merge(self, branch: str) -> None:
        proc = self._run_git(["merge", "--no-edit", branch], check=False)
        if proc.returncode == 0:
            return
        if self._merge_in_progress() or self.has_conflicts():
            aborted = self._run_git(["merge", "--abort"], check=False)
            if aborted.returncode != 0:
                self.hard_reset()
            raise GitLifecycleError(f"Merge conflict: {branch} -> {self.base_branch}")
        raise GitLifecycleError(proc.stderr.strip() or proc.stdout.strip() or f"Could not merge {branch}")

    def finalize(self, branch: str, message: str) -> FinalizeResult:
        self.ensure_branch(branch)
        self._run_git(["add", "-A"])
        committed = False
        if self._has_staged_changes():
            self._run_git(["commit", "-m", message])
            committed = True
        else:
            log.info("Nothing to commit on '%s'", branch)

        pushed = False
        if self.config.auto_push:
            self._run_git(["push", "--set-upstream", self.config.remote, branch])
            pushed = True

        merged = False
        branch_deleted = False
        self.checkout(self.base_branch)
        if self.config.auto_merge:
            self.merge(branch)
            merged = True
            branch_deleted = self.delete_branch(branch)
        self._task_branch = None
        return FinalizeResult(
            committed=committed, pushed=pushed, merged=merged, branch_deleted=branch_deleted
        )

    def abort(self, branch: str | None = None) -> None:
        branch = branch or self._task_branch
        self.exclude_local_paths()
        if self._merge_in_progress() or self.has_conflicts():
            self._run_git(["merge", "--abort"], check=False)
        if self.dirty_count():
            self.hard_reset()
        if self.current_branch() != self.base_branch:
            proc = self._run_git(["checkout", "-f", self.base_branch], check=False)
            if proc.returncode != 0:
                self.hard_reset()
                self.checkout(self.base_branch)
        if branch and branch != self.base_branch:
            self.delete_branch(branch, force=True)
        self._task_branch = None
        log.info("Aborted task work; on '%s' with %d dirty file(s)", self.current_branch(), self.dirty_count())

    def verify(self) -> VerifyReport:
        self.exclude_local_paths()
        fixed = False
        if self._merge_in_progress() or self.has_conflicts():
            log.warning("Unresolved merge found; aborting it")
            self._run_git(["merge", "--abort"], check=False)
            self.hard_reset()
            fixed = True
        dirty = self.dirty_count()
        if dirty:
            log.warning("%d dirty file(s) in the work tree; stashing them", dirty)
            self.park_changes(PARKED_LABEL)
            fixed = True
        current = self.current_branch()
        if current != self.base_branch:
            log.warning("On '%s' instead of '%s'; switching back", current, self.base_branch)
            proc = self._run_git(["checkout", "-f", self.base_branch], check=False)
            if proc.returncode != 0:
                self.hard_reset()
                self.checkout(self.base_branch)
            fixed = True
        final_dirty = self.dirty_count()
        final_branch = self.current_branch()
        return VerifyReport(
            clean=final_dirty == 0 and final_branch == self.base_branch,
            branch=final_branch,
            dirty=final_dirty,
            fixed=fixed,
        )
