"""Tests for report publishing."""

from pathlib import Path
from types import SimpleNamespace

import pytest

from testimpact_cli.analysis import TRUNCATION_MARKER
from testimpact_cli.config import AnalyzerConfig
from testimpact_cli.publisher import (
    FileCommentPoster,
    GhCommentPoster,
    NullPoster,
    PublishError,
    ReportPublisher,
    make_poster,
)


class TestReportPublisher:
    def test_writes_capped_temp_file(self, temp_dir):
        target = temp_dir / "report.md"
        publisher = ReportPublisher(AnalyzerConfig(body_max_chars=100), FileCommentPoster(target))

        path = publisher.publish("z" * 1_000, "42")

        assert path.name.startswith("pr-test-analyzer-") and path.suffix == ".md"
        body = target.read_text(encoding="utf-8")
        assert len(body) <= 100
        assert body.endswith(TRUNCATION_MARKER)

    def test_null_poster_keeps_file(self):
        path = ReportPublisher(AnalyzerConfig()).publish("short body")
        assert Path(path).read_text(encoding="utf-8") == "short body"


class TestGhCommentPoster:
    def test_command(self, temp_dir):
        calls = []

        def runner(cmd, **kwargs):
            calls.append(cmd)
            return SimpleNamespace(returncode=0, stdout="https://github.com/acme/shop/pull/42#issuecomment-1")

        GhCommentPoster("acme/shop", runner=runner).post(temp_dir / "body.md", "42")

        assert calls == [["gh", "pr", "comment", "42", "--repo", "acme/shop", "--body-file", str(temp_dir / "body.md")]]

    def test_non_zero_exit_raises(self, temp_dir):
        runner = lambda cmd, **kwargs: SimpleNamespace(returncode=1, stdout="HTTP 403")

        with pytest.raises(PublishError, match="HTTP 403"):
            GhCommentPoster("acme/shop", runner=runner).post(temp_dir / "body.md", "42")

    def test_missing_gh_raises(self, temp_dir):
        def runner(cmd, **kwargs):
            raise FileNotFoundError("gh")

        with pytest.raises(PublishError, match="gh CLI not found"):
            GhCommentPoster("acme/shop", runner=runner).post(temp_dir / "body.md", "42")


class TestMakePoster:
    def test_selection(self, temp_dir):
        assert isinstance(make_poster(AnalyzerConfig(), temp_dir / "r.md"), FileCommentPoster)
        assert isinstance(make_poster(AnalyzerConfig(repo="acme/shop", change_id="1")), GhCommentPoster)
        assert isinstance(make_poster(AnalyzerConfig()), NullPoster)
