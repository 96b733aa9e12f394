"""Runs the stages in order: intake, impact, selection, build, harvest, analysis, publish."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .analysis import AnalysisPipeline, cap_report, render_error_report, render_report
from .build_tool import BuildAdapter
from .changes import GitClient, GitHubClient, collect_diffs
from .config import AnalyzerConfig, ConfigError
from .impact import ImpactIndexBuilder
from .llm import ChatProvider, resolve_provider
from .models import (
    AnalysisContext,
    ChangedFile,
    Endpoint,
    ImpactIndex,
    ProjectLayout,
    TestRunResult,
    TestSelection,
)
from .publisher import CommentPoster, PublishError, ReportPublisher
from .refiner import make_refiner
from .reports import harvest, report_roots, summarize
from .rules import RuleEngine

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TESTS_FAILED = 1


@dataclass
class SelectionResult:
    index: ImpactIndex
    endpoints: List[Endpoint]
    selection: TestSelection
    diffs: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineOutcome:
    report: str
    published_path: Optional[Path]
    tests_failed: bool
    exit_code: int
    selection: Optional[TestSelection] = None
    run_result: Optional[TestRunResult] = None


class Pipeline:
    """One analyzer run over a single change.

    Every collaborator can be injected; by default they are built from
    ``config``.
    """

    def __init__(
        self,
        config: AnalyzerConfig,
        changed_files: Optional[Sequence[ChangedFile]] = None,
        poster: Optional[CommentPoster] = None,
        provider_factory: Callable[[AnalyzerConfig], Optional[ChatProvider]] = resolve_provider,
        git: Optional[GitClient] = None,
        github: Optional[GitHubClient] = None,
        adapter: Optional[BuildAdapter] = None,
    ):
        self.config = config
        self.layout = ProjectLayout(root=Path(config.project_root))
        self._changed_files = list(changed_files) if changed_files is not None else None
        self.poster = poster
        self.provider = provider_factory(config)
        self.git = git or GitClient(self.layout.root)
        self.github = github or GitHubClient()
        self.adapter = adapter or BuildAdapter(self.layout.root)
        self.selection: Optional[TestSelection] = None
        self.run_result: Optional[TestRunResult] = None

    def intake(self) -> List[ChangedFile]:
        """Changed files: explicit list, then the PR listing, then a local git range."""
        if self._changed_files is not None:
            return self._changed_files
        config = self.config
        if config.repo and config.change_id:
            return self.github.list_pr_files(config.repo, config.change_id)
        if config.base_sha and config.head_sha:
            return self.git.changed_files(config.base_sha, config.head_sha)
        logger.warning("No change source configured (PR identifiers or base/head); nothing to analyse")
        return []

    def select(self, changed: Sequence[ChangedFile]) -> SelectionResult:
        builder = ImpactIndexBuilder(self.layout)
        index, endpoints = builder.build(changed)

        diffs: Dict[str, str] = {}
        if self.config.base_sha and self.config.head_sha:
            diffs = collect_diffs(changed, self.git, self.config.base_sha, self.config.head_sha)

        package_index = builder.package_index() if self.config.selector_enabled else {}
        refiner = make_refiner(self.config, self.provider)
        selection = refiner.refine(index.test_names(), changed, package_index, diffs)
        logger.info("Selected %d test class(es) for %d changed file(s)", len(selection), len(changed))
        return SelectionResult(index=index, endpoints=endpoints, selection=selection, diffs=diffs)

    def run(self) -> PipelineOutcome:
        """Run every stage, publish whatever report was produced, then pick the exit code.

        A stage that raises still yields a short error report listing the
        changed files.
        """
        config = self.config
        changed: List[ChangedFile] = []
        try:
            changed = self.intake()
            report = self.build_report(changed)
        except Exception as exc:
            logger.exception("Analyzer stage failed; publishing an error report")
            report = render_error_report(changed, exc, config, self.run_result)

        report = cap_report(report, config.body_max_chars)
        published = self.publish(report)

        result = self.run_result
        tests_failed = result is not None and result.failed
        exit_code = EXIT_TESTS_FAILED if tests_failed and config.fail_on_test_failure else EXIT_OK
        return PipelineOutcome(
            report=report,
            published_path=published,
            tests_failed=tests_failed,
            exit_code=exit_code,
            selection=self.selection,
            run_result=result,
        )

    def build_report(self, changed: Sequence[ChangedFile]) -> str:
        config = self.config
        selected = self.select(changed)
        self.selection = selected.selection

        kind = self.adapter.detect()
        result = self.run_result = self.adapter.run(kind, selected.selection)
        diagnostics = harvest(
            result,
            report_roots(self.layout.root),
            max_highlights=config.max_highlights,
            log_max_chars=config.log_max_chars,
        )

        context = AnalysisContext(
            changed_files=list(changed),
            selection=selected.selection,
            run_result=result,
            build_tool=kind.value,
            summary=summarize(result, diagnostics.reports_tail, diagnostics.records),
            diagnostics=diagnostics,
            candidate_listing=selected.index.candidate_listing(),
            endpoints=selected.endpoints,
            diffs=selected.diffs,
            repo=config.repo,
            change_id=config.change_id,
            base_sha=config.base_sha,
            head_sha=config.head_sha,
        )
        analysis = AnalysisPipeline(config, self.provider, RuleEngine()).analyze(context)
        return render_report(context, analysis, config)

    def publish(self, report: str) -> Optional[Path]:
        try:
            return ReportPublisher(self.config, self.poster).publish(report, self.config.change_id)
        except PublishError as exc:
            logger.warning("Publishing the report failed: %s", exc)
            return None


def run_pipeline(config: AnalyzerConfig, require_pr: bool = True, **kwargs) -> int:
    """Run the full pipeline and map the outcome to a process exit code.

    Test failures return 1 only when ``fail_on_test_failure`` is set; every
    other path returns 0 so CI is not blocked. A missing PR identifier is
    logged and nothing is analysed.
    """
    try:
        if require_pr:
            config.require_pr_identifiers()
    except ConfigError as exc:
        logger.error("%s; nothing analysed", exc)
        return EXIT_OK

    try:
        outcome = Pipeline(config, **kwargs).run()
    except Exception:
        logger.exception("Analyzer failed unexpectedly")
        return EXIT_OK
    return outcome.exit_code
