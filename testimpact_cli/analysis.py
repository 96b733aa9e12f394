"""Prompt assembly, provider fallback chain, and report rendering."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .config import AnalyzerConfig
from .llm import ChatProvider, ProviderError, user_messages
from .models import AnalysisContext, ChangedFile, TestRunResult
from .reports import render_failures
from .rules import RuleEngine

logger = logging.getLogger(__name__)

REPORT_TITLE = "🤖 PR Targeted Test Analyzer"
TRUNCATION_MARKER = "\n\n…(truncated)…"
NO_TESTS_MATCHED = "No targeted tests matched the changed files; no tests were run."

PROMPT_TASK = (
    "Task:\n"
    "1) Identify the most relevant unit tests to run (class names) and any that are missing but should exist.\n"
    "2) Suggest additional minimal tests (class#method) that cover the changed code paths and edge cases.\n"
    "3) If failures are present, give likely root causes and minimal fixes.\n"
    "4) Provide the exact Maven or Gradle commands to run those tests.\n"
    "Keep the answer concise and structured."
)


def cap_report(body: str, max_chars: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cut ``body`` to at most ``max_chars``, ending with ``marker`` when cut."""
    if len(body) <= max_chars:
        return body
    if max_chars <= len(marker):
        return marker[:max_chars]
    return body[: max_chars - len(marker)] + marker


def build_prompt(context: AnalysisContext, max_chars: int) -> str:
    changed = "\n".join(str(cf) for cf in context.changed_files) or "(none)"
    endpoints = "\n".join(f"{e.method} {e.path} ({e.controller_name}#{e.handler_name}): {e.reason}"
                          for e in context.endpoints) or "(none)"
    diffs = "".join(f"\n=== DIFF: {path} ===\n{diff}\n" for path, diff in context.diffs.items())
    failures = render_failures(context.diagnostics.records) or "(none)"

    prompt = (
        f"Repository: {context.repo or '(local)'}\n"
        f"PR: #{context.change_id or '-'}\n"
        f"Base SHA: {context.base_sha}\n"
        f"Head SHA: {context.head_sha}\n\n"
        f"Changed files:\n{changed}\n\n"
        f"Heuristic selected test classes: {context.selection.classes}\n\n"
        f"Affected endpoints:\n{endpoints}\n\n"
        f"Test summary:\n{context.summary}\n\n"
        f"Failures:\n{failures}\n\n"
        f"Error highlights:\n{context.diagnostics.highlights or '(none)'}\n\n"
        f"Relevant diffs (truncated):\n{diffs or '(none)'}\n\n"
        f"{PROMPT_TASK}"
    )
    if len(prompt) > max_chars:
        # Keep the task instructions; cut from the middle.
        head = prompt[: max(0, max_chars - len(PROMPT_TASK) - 20)]
        prompt = f"{head}\n...[truncated]...\n\n{PROMPT_TASK}"[:max_chars]
    return prompt


def provider_failure_note(provider: ChatProvider, exc: ProviderError) -> str:
    status = exc.status_code
    if status in (401, 403):
        return f"{provider.name} {status} (key invalid or insufficient scope). Falling back to rule-based suggestions."
    if status == 404:
        return f"{provider.name} 404 (model not found: {provider.model}). Falling back to rule-based suggestions."
    if status == 429:
        return f"{provider.name} 429 (rate limit). Please retry later."
    return f"{provider.name} call failed: {exc}. Falling back to rule-based suggestions."


class AnalysisPipeline:
    """Calls exactly one provider, or the rule engine, for a narrative."""

    def __init__(
        self,
        config: AnalyzerConfig,
        provider: Optional[ChatProvider] = None,
        rules: Optional[RuleEngine] = None,
    ):
        self.config = config
        self.provider = provider
        self.rules = rules or RuleEngine()

    def analyze(self, context: AnalysisContext) -> str:
        diagnostics_text = context.diagnostics.text()
        if self.provider is None:
            return self.rules.suggest(diagnostics_text)

        prompt = build_prompt(context, self.config.prompt_max_chars)
        try:
            content = self.provider.complete(
                user_messages(prompt),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except ProviderError as exc:
            logger.warning("Analysis provider failed, using rules: %s", exc)
            return provider_failure_note(self.provider, exc) + "\n\n" + self.rules.suggest(diagnostics_text)
        return "```\n" + content.strip() + "\n```"


def render_report(context: AnalysisContext, analysis: str, config: AnalyzerConfig) -> str:
    """Render the Markdown report body (uncapped)."""
    result = context.run_result
    selection = context.selection
    lines: List[str] = [
        REPORT_TITLE,
        "",
        f"- PR: {config.change_url}",
        f"- Build tool: {context.build_tool}",
        f"- Selected tests (heuristics): {', '.join(selection.classes) if selection.classes else '(none)'}",
        f"- Test command: {result.command}",
        f"- Test exit code: {result.exit_code if result.executed else '(n/a)'}",
    ]
    if config.fail_on_test_failure:
        lines.append("- Fail-on-test-failure: enabled")
    if selection.rationale:
        lines.append(f"- Selection rationale: {selection.rationale}")
    lines.append("")

    if selection.is_empty:
        lines.extend([f"> {NO_TESTS_MATCHED}", ""])

    changed = "\n".join(f"- {cf}" for cf in context.changed_files) or "(no files reported)"
    lines.extend(["Changed files:", "```", changed, "```", ""])

    if context.candidate_listing.strip():
        lines.extend(["Candidate test files (mapped and existing):", "```", context.candidate_listing, "```", ""])

    if selection.method_filters:
        filters = "\n".join(f"{cls}#{'+'.join(methods)}" for cls, methods in selection.method_filters.items())
        lines.extend(["Method filters:", "```", filters, "```", ""])

    if context.endpoints:
        lines.extend(["Affected endpoints:", "", "| Method | Path | Handler | Reason |", "|---|---|---|---|"])
        for e in context.endpoints:
            lines.append(f"| {e.method} | `{e.path}` | {e.controller_name}#{e.handler_name} | {e.reason} |")
        lines.append("")

    lines.extend(["Test summary:", "```", context.summary, "```", ""])

    diagnostics = context.diagnostics
    if diagnostics.records:
        lines.extend(["Failures:", "```txt", render_failures(diagnostics.records), "```", ""])
    elif diagnostics.highlights.strip():
        lines.extend([f"Error highlights (first {config.max_highlights} lines):", "```txt",
                      diagnostics.highlights, "```", ""])

    lines.extend(["Analysis and suggestions:", analysis, ""])
    return "\n".join(lines)


def render_error_report(
    changed_files: Sequence[ChangedFile],
    error: BaseException,
    config: AnalyzerConfig,
    run_result: Optional[TestRunResult] = None,
) -> str:
    """Minimal report for a run that stopped before analysis finished."""
    lines: List[str] = [
        REPORT_TITLE,
        "",
        f"- PR: {config.change_url}",
    ]
    if run_result is not None and run_result.executed:
        lines.extend([f"- Test command: {run_result.command}", f"- Test exit code: {run_result.exit_code}"])
    lines.extend(["", f"> Analyzer error: {type(error).__name__}: {error}", ""])

    changed = "\n".join(f"- {cf}" for cf in changed_files) or "(no files reported)"
    lines.extend(["Changed files:", "```", changed, "```", ""])
    return "\n".join(lines)
