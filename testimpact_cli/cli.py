"""Typer-based CLI for targeted test selection and CI failure analysis."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .changes import read_change_list
from .config import AnalyzerConfig, ConfigError, config_path, mask_secret
from .endpoints import extract_endpoints
from .models import ChangedFile, ProjectLayout, TestRunResult
from .orchestrator import Pipeline, run_pipeline
from .publisher import make_poster
from .reports import harvest, render_failures, report_roots
from .rules import RuleEngine

app = typer.Typer(
    help="🧪 testimpact: run only the tests a change touches, then explain the failures.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"testimpact v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log progress and debug detail."),
):
    """testimpact: change-impact test selection with LLM or rule-based diagnostics."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


def _load_config(project: Path, **overrides) -> AnalyzerConfig:
    return AnalyzerConfig.load().with_overrides(project_root=project.resolve(), **overrides)


def _read_changes(changes: Optional[Path]) -> Optional[List[ChangedFile]]:
    if changes is None:
        return None
    return read_change_list(changes.read_text(encoding="utf-8"))


def _changed_for(cfg: AnalyzerConfig, changes: Optional[Path]) -> List[ChangedFile]:
    pipeline = Pipeline(cfg, changed_files=_read_changes(changes), provider_factory=lambda _: None)
    return pipeline.intake()


ProjectOption = typer.Option(Path("."), "--project", "-p", exists=True, file_okay=False,
                             help="Root of the Maven/Gradle project.")
ChangesOption = typer.Option(None, "--changes", "-c", exists=True, dir_okay=False,
                             help="File listing changed paths, one '<status> <path>' per line.")


@app.command("run")
def run(
    project: Path = ProjectOption,
    repo: Optional[str] = typer.Option(None, "--repo", help="owner/name of the repository (PR mode)."),
    pr: Optional[str] = typer.Option(None, "--pr", help="Pull request number (PR mode)."),
    base: Optional[str] = typer.Option(None, "--base", help="Base commit for a local git range."),
    head: Optional[str] = typer.Option(None, "--head", help="Head commit for a local git range."),
    changes: Optional[Path] = ChangesOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the report here instead of commenting."),
    fail_on_test_failure: Optional[bool] = typer.Option(
        None, "--fail-on-test-failure/--no-fail-on-test-failure", help="Exit 1 when the selected tests fail."
    ),
    llm_selector: Optional[bool] = typer.Option(
        None, "--llm-selector/--no-llm-selector", help="Let the LLM refine the heuristic selection."
    ),
):
    """🚀 Select, run and analyse the tests affected by a change.

    Example:
      testimpact run --repo acme/shop --pr 42
      testimpact run --base main --head HEAD -o report.md
    """
    cfg = _load_config(
        project,
        repo=repo,
        change_id=pr,
        base_sha=base,
        head_sha=head,
        fail_on_test_failure=fail_on_test_failure,
        selector_enabled=llm_selector,
    )
    pr_mode = bool(cfg.repo or cfg.change_id) and output is None
    if pr_mode:
        try:
            cfg.require_pr_identifiers()
        except ConfigError as exc:
            typer.echo(f"❌ {exc}. Nothing was analysed.", err=True)
            raise typer.Exit()

    code = run_pipeline(
        cfg,
        require_pr=False,
        changed_files=_read_changes(changes),
        poster=make_poster(cfg, output),
    )
    if output is not None:
        typer.echo(f"📝 Report written to {output}")
    raise typer.Exit(code=code)


@app.command("select")
def select(
    project: Path = ProjectOption,
    base: Optional[str] = typer.Option(None, "--base", help="Base commit."),
    head: Optional[str] = typer.Option(None, "--head", help="Head commit."),
    changes: Optional[Path] = ChangesOption,
    llm_selector: Optional[bool] = typer.Option(None, "--llm-selector/--no-llm-selector"),
):
    """🎯 Show which test classes would run, without running them."""
    cfg = _load_config(project, base_sha=base, head_sha=head, selector_enabled=llm_selector)
    pipeline = Pipeline(cfg, changed_files=_read_changes(changes))
    changed = pipeline.intake()
    result = pipeline.select(changed)

    if result.selection.is_empty:
        typer.echo("No targeted tests matched the changed files.")
        return

    table = Table(title="Selected tests", title_style="bold cyan")
    table.add_column("Test class", style="bold")
    table.add_column("Methods")
    for cls in result.selection.classes:
        table.add_row(cls, ", ".join(result.selection.method_filters.get(cls, [])) or "(all)")
    console.print(table)
    if result.selection.rationale:
        console.print(Panel(Text(result.selection.rationale), title="Rationale", style="dim"))


@app.command("endpoints")
def endpoints(
    project: Path = ProjectOption,
    base: Optional[str] = typer.Option(None, "--base", help="Base commit."),
    head: Optional[str] = typer.Option(None, "--head", help="Head commit."),
    changes: Optional[Path] = ChangesOption,
):
    """🌐 List HTTP endpoints affected by the change."""
    cfg = _load_config(project, base_sha=base, head_sha=head)
    changed = _changed_for(cfg, changes)
    found = extract_endpoints(changed, ProjectLayout(root=Path(cfg.project_root)))

    if not found:
        typer.echo("No affected endpoints found.")
        return

    table = Table(title=f"Affected endpoints ({len(found)})", title_style="bold cyan")
    table.add_column("Method", style="bold green")
    table.add_column("Path")
    table.add_column("Handler")
    table.add_column("Reason", style="dim")
    for e in found:
        table.add_row(e.method, e.path, f"{e.controller_name}#{e.handler_name}", e.reason)
    console.print(table)


@app.command("diagnose")
def diagnose(
    project: Path = ProjectOption,
    log: Optional[Path] = typer.Option(None, "--log", exists=True, dir_okay=False, help="Console log of a test run."),
):
    """🔍 Read existing test reports and print failures with suggestions."""
    cfg = _load_config(project)
    raw = log.read_text(encoding="utf-8", errors="replace") if log else ""
    # Treat the reports as coming from a failed run so records are collected.
    result = TestRunResult(True, 1, "(existing reports)", raw, "(none)")
    diagnostics = harvest(result, report_roots(Path(cfg.project_root)), cfg.max_highlights, cfg.log_max_chars)

    if diagnostics.records:
        console.print(Panel(Text(render_failures(diagnostics.records)),
                            title=f"Failures ({len(diagnostics.records)})", style="red"))
    elif diagnostics.highlights:
        console.print(Panel(Text(diagnostics.highlights), title="Error highlights", style="yellow"))
    else:
        typer.echo("✅ No failure diagnostics found.")
        return

    typer.echo(RuleEngine().suggest(diagnostics.text()))


@app.command("show-config")
def show_config(project: Path = ProjectOption):
    """⚙️  Show the effective configuration (secrets masked)."""
    cfg = _load_config(project)
    table = Table(title="Effective configuration", show_header=False, title_style="bold cyan")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    rows = [
        ("Project", str(cfg.project_root)),
        ("Change", cfg.change_url),
        ("Base/Head", f"{cfg.base_sha or '-'} .. {cfg.head_sha or '-'}"),
        ("Local LLM", f"{cfg.local_model} @ {cfg.local_base_url}" if cfg.local_configured else "(not configured)"),
        ("Local API key", mask_secret(cfg.local_api_key)),
        ("Remote model", cfg.remote_model),
        ("Remote API key", mask_secret(cfg.remote_api_key)),
        ("Max tokens", str(cfg.max_tokens)),
        ("Max highlights", str(cfg.max_highlights)),
        ("LLM test selector", "on" if cfg.selector_enabled else "off"),
        ("Fail on test failure", "yes" if cfg.fail_on_test_failure else "no"),
        ("Config file", str(config_path())),
    ]
    for key, value in rows:
        table.add_row(key, value)
    console.print(table)


if __name__ == "__main__":
    app()
