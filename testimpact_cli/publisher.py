"""Publish the rendered report as a review comment, a local file, or nowhere."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from .analysis import cap_report
from .config import AnalyzerConfig

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """The comment could not be posted."""


class CommentPoster:
    def post(self, body_file: Path, change_id: str) -> None:
        raise NotImplementedError


class GhCommentPoster(CommentPoster):
    """Posts through the ``gh`` CLI: ``gh pr comment <n> --repo <r> --body-file <f>``."""

    def __init__(self, repo: str, runner=subprocess.run):
        self.repo = repo
        self.runner = runner

    def command(self, body_file: Path, change_id: str) -> List[str]:
        return ["gh", "pr", "comment", str(change_id), "--repo", self.repo, "--body-file", str(body_file)]

    def post(self, body_file: Path, change_id: str) -> None:
        cmd = self.command(body_file, change_id)
        try:
            proc = self.runner(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except FileNotFoundError as exc:
            raise PublishError(f"gh CLI not found: {exc}") from exc
        if proc.returncode != 0:
            raise PublishError(f"gh pr comment exited {proc.returncode}: {(proc.stdout or '').strip()[:500]}")


class FileCommentPoster(CommentPoster):
    """Copies the report to a local path; used for local runs."""

    def __init__(self, destination: Path):
        self.destination = Path(destination)

    def post(self, body_file: Path, change_id: str) -> None:
        try:
            self.destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(body_file, self.destination)
        except OSError as exc:
            raise PublishError(f"Cannot write report to {self.destination}: {exc}") from exc


class NullPoster(CommentPoster):
    def post(self, body_file: Path, change_id: str) -> None:
        logger.debug("Report for %s kept at %s (not posted)", change_id or "local run", body_file)


class ReportPublisher:
    """Caps the body, writes it to a temp Markdown file and hands it to a poster."""

    def __init__(self, config: AnalyzerConfig, poster: Optional[CommentPoster] = None):
        self.config = config
        self.poster = poster or NullPoster()

    def publish(self, body: str, change_id: str = "") -> Path:
        capped = cap_report(body, self.config.body_max_chars)
        with tempfile.NamedTemporaryFile(
            "w", prefix="pr-test-analyzer-", suffix=".md", delete=False, encoding="utf-8"
        ) as handle:
            handle.write(capped)
            path = Path(handle.name)
        logger.info("Report written to %s (%d chars)", path, len(capped))
        self.poster.post(path, change_id)
        return path


def make_poster(config: AnalyzerConfig, output: Optional[Path] = None) -> CommentPoster:
    """A file poster when ``output`` is given, else a PR comment when identifiers exist."""
    if output is not None:
        return FileCommentPoster(output)
    if config.repo and config.change_id:
        return GhCommentPoster(config.repo)
    return NullPoster()
