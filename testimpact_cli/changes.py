"""Change intake and the source-control collaborators that feed it."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import ChangedFile, ChangeStatus

logger = logging.getLogger(__name__)

DIFF_MAX_LINES = 200
DIFF_FILE_MAX_CHARS = 2_000
DIFF_TOTAL_MAX_CHARS = 14_000

_STATUS_TOKEN = re.compile(
    r"^(?:added|modified|changed|copied|removed|deleted|renamed|[AMDRCT]\d{0,3})$",
    re.IGNORECASE,
)


def normalize_changes(pairs: Iterable[Tuple[str, str]]) -> List[ChangedFile]:
    """Turn raw ``(path, status)`` pairs into ordered, unique ChangedFiles.

    Empty paths are dropped, Windows separators normalised and the first
    occurrence of a path wins.
    """
    seen: Dict[str, ChangedFile] = {}
    for path, status in pairs:
        clean = (path or "").strip().replace("\\", "/")
        while clean.startswith("./"):
            clean = clean[2:]
        if not clean or clean in seen:
            continue
        seen[clean] = ChangedFile(path=clean, status=ChangeStatus.parse(status))
    return list(seen.values())


def parse_name_status(output: str) -> List[Tuple[str, str]]:
    """Parse ``git diff --name-status`` output. Renames and copies take the new path."""
    pairs = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        status = parts[0].strip()
        if status[:1] in ("R", "C") and len(parts) >= 3:
            pairs.append((parts[2], status))
        elif len(parts) >= 2:
            pairs.append((parts[1], status))
    return pairs


def read_change_list(text: str) -> List[ChangedFile]:
    """Read a change list file: ``<status> <path>`` or a bare path per line."""
    pairs = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "\t" in line:
            pairs.extend(parse_name_status(line))
            continue
        head, _, rest = line.partition(" ")
        if rest and _STATUS_TOKEN.match(head):
            pairs.append((rest.strip(), head))
        else:
            pairs.append((line, "modified"))
    return normalize_changes(pairs)


def _run(cmd: Sequence[str], cwd: Optional[Path] = None) -> str:
    """Run a command and return combined output; the exit code is not checked."""
    result = subprocess.run(
        list(cmd),
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )
    return result.stdout or ""


class GitClient:
    """Thin wrapper over the ``git`` executable."""

    def __init__(self, repo_root: Path):
        self.repo_root = repo_root

    def changed_files(self, base: str, head: str) -> List[ChangedFile]:
        output = _run(["git", "diff", "--name-status", f"{base}..{head}"], cwd=self.repo_root)
        return normalize_changes(parse_name_status(output))

    def file_diff(self, path: str, base: str = "", head: str = "", max_lines: int = DIFF_MAX_LINES) -> str:
        cmd = ["git", "--no-pager", "diff", "--unified=0"]
        if base and head:
            cmd.append(f"{base}..{head}")
        cmd.extend(["--", path])
        try:
            output = _run(cmd, cwd=self.repo_root)
        except OSError as exc:
            logger.warning("git diff failed for %s: %s", path, exc)
            return ""
        lines = output.splitlines()
        return "\n".join(lines[:max_lines])


class GitHubClient:
    """Reads pull-request file listings through the ``gh`` CLI."""

    PAGE_SIZE = 100

    def __init__(self, runner=_run):
        self._run = runner

    def list_pr_files(self, repo: str, number: str) -> List[ChangedFile]:
        pairs: List[Tuple[str, str]] = []
        page = 1
        while True:
            endpoint = f"repos/{repo}/pulls/{number}/files?per_page={self.PAGE_SIZE}&page={page}"
            raw = self._run(["gh", "api", endpoint])
            try:
                items = json.loads(raw) if raw.strip() else []
            except json.JSONDecodeError:
                logger.warning("Unexpected gh api response on page %d: %s", page, raw[:200])
                break
            if not isinstance(items, list) or not items:
                break
            for item in items:
                if isinstance(item, dict) and item.get("filename"):
                    pairs.append((item["filename"], item.get("status", "modified")))
            if len(items) < self.PAGE_SIZE:
                break
            page += 1
        return normalize_changes(pairs)


def collect_diffs(
    changed: Sequence[ChangedFile],
    git: GitClient,
    base: str = "",
    head: str = "",
    per_file_chars: int = DIFF_FILE_MAX_CHARS,
    total_chars: int = DIFF_TOTAL_MAX_CHARS,
) -> Dict[str, str]:
    """Per-file diff excerpts, each capped, stopping once the total budget is spent."""
    diffs: Dict[str, str] = {}
    used = 0
    for cf in changed:
        if used > total_chars:
            break
        diff = git.file_diff(cf.path, base, head)
        if not diff.strip():
            continue
        if len(diff) > per_file_chars:
            diff = "...[truncated]...\n" + diff[-per_file_chars:]
        diffs[cf.path] = diff
        used += len(diff)
    return diffs
