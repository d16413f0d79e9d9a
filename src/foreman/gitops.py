from __future__ import annotations

import re
import subprocess
from pathlib import Path

STATE_DIR_NAME = ".foreman"
_EXCLUDE_STATE = f":(exclude){STATE_DIR_NAME}"
BRANCH_UNSAFE = re.compile(r"[^a-z0-9._-]+")


class GitError(RuntimeError):
    """Raised when a required git command fails."""


def run_git(
    repo_root: Path,
    args: list[str],
    *,
    check: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        input=input_text,
    )
    if check and proc.returncode != 0:
        message = proc.stderr.strip() or proc.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return proc


def is_git_repo(repo_root: Path) -> bool:
    proc = run_git(repo_root, ["rev-parse", "--is-inside-work-tree"], check=False)
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def detect_default_branch(repo_root: Path) -> str:
    proc = run_git(repo_root, ["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], check=False)
    if proc.returncode == 0:
        raw = proc.stdout.strip()
        if raw.startswith("origin/") and len(raw) > len("origin/"):
            return raw[len("origin/") :]
    main_check = run_git(repo_root, ["rev-parse", "--verify", "--quiet", "main"], check=False)
    return "main" if main_check.returncode == 0 else "master"


def current_branch(repo_root: Path) -> str:
    return run_git(repo_root, ["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()


def branch_exists(repo_root: Path, branch: str) -> bool:
    proc = run_git(repo_root, ["rev-parse", "--verify", "--quiet", branch], check=False)
    return proc.returncode == 0


def is_dirty(repo_root: Path) -> bool:
    proc = run_git(repo_root, ["status", "--porcelain", "--", ".", _EXCLUDE_STATE])
    return bool(proc.stdout.strip())


def checkout(repo_root: Path, branch: str, *, create_from: str | None = None) -> None:
    if create_from is not None:
        run_git(repo_root, ["checkout", "-B", branch, create_from])
    else:
        run_git(repo_root, ["checkout", branch])


def commit_all(repo_root: Path, message: str) -> bool:
    """Stage everything outside the state directory and commit; False if nothing changed."""
    if not is_dirty(repo_root):
        return False
    run_git(repo_root, ["add", "-A", "--", ".", _EXCLUDE_STATE])
    run_git(repo_root, ["commit", "-m", message])
    return True


def discard_changes(repo_root: Path) -> None:
    run_git(repo_root, ["restore", "--staged", "--worktree", "."], check=False)
    run_git(repo_root, ["clean", "-fd", "-e", STATE_DIR_NAME])


def commits_ahead(repo_root: Path, base: str, branch: str) -> int:
    proc = run_git(repo_root, ["log", f"{base}..{branch}", "--oneline"], check=False)
    if proc.returncode != 0:
        return 0
    return len([line for line in proc.stdout.splitlines() if line.strip()])


def delete_branch(repo_root: Path, branch: str) -> None:
    run_git(repo_root, ["branch", "-D", branch])


def diff_against(repo_root: Path, base: str, branch: str, *, limit: int = 8000) -> tuple[str, str]:
    """Return ``(stat, patch)`` of ``branch`` relative to its merge base with ``base``."""
    stat = run_git(repo_root, ["diff", f"{base}...{branch}", "--stat"], check=False).stdout
    patch = run_git(repo_root, ["diff", f"{base}...{branch}"], check=False).stdout
    if len(patch) > limit:
        patch = patch[:limit] + "\n... (truncated)"
    return stat.strip(), patch


def slugify(text: str, *, max_length: int = 40) -> str:
    slug = BRANCH_UNSAFE.sub("-", text.lower()).strip("-.")
    return slug[:max_length].rstrip("-.") or "issue"


def issue_branch_name(issue_id: str, title: str, *, source: str = "local", kind: str = "feat") -> str:
    safe_id = BRANCH_UNSAFE.sub("-", str(issue_id).lower()).strip("-") or "0"
    return f"{kind}/{slugify(title)}_{source}_{safe_id}"
