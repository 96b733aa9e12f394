"""Harvest failure diagnostics from test reports and console output."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import LOG_MAX_CHARS
from .models import Diagnostics, FailureKind, FailureRecord, TestRunResult

logger = logging.getLogger(__name__)

REPORT_DIRS = (
    "target/surefire-reports",
    "target/failsafe-reports",
    "build/test-results/test",
)

STACK_EXCERPT_CHARS = 1_500
REPORT_FILE_TAIL_CHARS = 2_000
CONSOLE_MAX_CHARS = 40_000
SURFACED_FAILURES = 3
SNIPPET_LINES_BEFORE = 3
SNIPPET_LINES_AFTER = 40
SUMMARY_TAIL_LINES = 80
TRUNCATED = "...[truncated]..."

HIGHLIGHT_RE = re.compile(
    r"\b(error|failed|failure|exception|traceback|no classdef|classnotfound|assertion(?:error)?"
    r"|build failed|maven|gradle|test failed|cannot find symbol|undefined reference|stack trace|fatal:)",
    re.IGNORECASE,
)
TEXT_FAILURE_MARKER = re.compile(r"<<<\s*(FAILURE|ERROR)!|\bFAILED\b")
SUMMARY_LINE_RE = re.compile(
    r"(?im)^.*(?:Tests run:\s*\d+\s*,.*|Failures:\s*\d+.*|Errors:\s*\d+.*|Skipped:\s*\d+.*"
    r"|\d+ tests? completed, \d+ failed.*)$"
)


def trim_to(text: Optional[str], max_chars: int) -> str:
    """Keep the last ``max_chars`` characters, prefixed with a marker when cut."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{TRUNCATED}\n{text[-max_chars:]}"


def truncate_head(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n{TRUNCATED}"


def report_roots(project_root: Path) -> List[Path]:
    return [project_root / d for d in REPORT_DIRS]


def _report_files(roots: Iterable[Path], suffix: str) -> List[Path]:
    files: List[Path] = []
    for root in roots:
        if root.is_dir():
            files.extend(p for p in sorted(root.rglob(f"*{suffix}")) if p.is_file())
    return files


def _simple_class(classname: str) -> str:
    return classname.rsplit(".", 1)[-1] if classname else "(unknown)"


def parse_junit_xml(path: Path) -> List[FailureRecord]:
    """Failure and error records from one JUnit XML report."""
    try:
        tree = ET.parse(path)
    except (ET.ParseError, OSError) as exc:
        logger.warning("Skipping unreadable report %s: %s", path, exc)
        return []

    records = []
    for case in tree.getroot().iter("testcase"):
        for kind in (FailureKind.FAILURE, FailureKind.ERROR):
            child = case.find(kind.value)
            if child is None:
                continue
            identifier = f"{_simple_class(case.get('classname', ''))}#{case.get('name', '?')}"
            records.append(FailureRecord(
                test_identifier=identifier,
                kind=kind,
                message=(child.get("message") or "").strip(),
                stack_excerpt=truncate_head((child.text or "").strip(), STACK_EXCERPT_CHARS),
            ))
            break
    return records


def parse_text_report(path: Path) -> List[FailureRecord]:
    """Snippets around failure markers in a plain-text Surefire report."""
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        logger.warning("Skipping unreadable report %s: %s", path, exc)
        return []

    records = []
    for i, line in enumerate(lines):
        m = TEXT_FAILURE_MARKER.search(line)
        if not m or line.lstrip().startswith("Tests run:"):
            continue
        start = max(0, i - SNIPPET_LINES_BEFORE)
        snippet = "\n".join(lines[start:i + SNIPPET_LINES_AFTER + 1])
        kind = FailureKind.ERROR if m.group(1) == "ERROR" else FailureKind.FAILURE
        name = line.split("<<<")[0].split("Time elapsed")[0].strip().rstrip(" -") or path.stem
        records.append(FailureRecord(
            test_identifier=name,
            kind=kind,
            message=line.strip(),
            stack_excerpt=truncate_head(snippet, STACK_EXCERPT_CHARS),
        ))
    return records


def _collect(roots: Sequence[Path]) -> Tuple[List[FailureRecord], str]:
    records: List[FailureRecord] = []
    for path in _report_files(roots, ".xml"):
        records.extend(parse_junit_xml(path))
    if records:
        return records, "structured"
    for path in _report_files(roots, ".txt"):
        records.extend(parse_text_report(path))
    return records, "text-reports"


def collect_diagnostics(roots: Sequence[Path]) -> List[FailureRecord]:
    """Structured XML reports first; plain-text reports only if XML found nothing."""
    return _collect(roots)[0]


def read_reports_tail(roots: Sequence[Path], max_chars: int = LOG_MAX_CHARS) -> str:
    parts = []
    for path in _report_files(roots, ".txt"):
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Cannot read %s: %s", path, exc)
            continue
        parts.append(f"\n==== {path} ====\n{trim_to(text, REPORT_FILE_TAIL_CHARS)}")
    out = "".join(parts)
    if len(out) > max_chars:
        out = f"...[truncated to last {max_chars} chars]...\n" + out[-max_chars:]
    return out


def extract_error_highlights(text: Optional[str], max_lines: int) -> str:
    """Lines matching failure keywords; the output tail when none match."""
    lines = (text or "").splitlines()
    hits = []
    for line in lines:
        if HIGHLIGHT_RE.search(line):
            hits.append(line)
            if len(hits) >= max_lines:
                break
    if not hits:
        keep = min(200, max_lines)
        hits = lines[-keep:] if keep > 0 else []
    return "\n".join(hits).strip()


def harvest(
    result: TestRunResult,
    roots: Sequence[Path],
    max_highlights: int = 200,
    log_max_chars: int = LOG_MAX_CHARS,
) -> Diagnostics:
    """Collect diagnostics for a run.

    Structured records win; keyword highlighting of the console only runs
    when no failure record was extracted.
    """
    reports_tail = read_reports_tail(roots, log_max_chars)
    records: List[FailureRecord] = []
    source = "none"
    if result.failed:
        records, source = _collect(roots)

    if records:
        return Diagnostics(records=records, reports_tail=reports_tail, source=source)

    combined = trim_to(result.raw_output, CONSOLE_MAX_CHARS) + "\n" + reports_tail
    highlights = extract_error_highlights(combined, max_highlights)
    source = "highlights" if any(HIGHLIGHT_RE.search(l) for l in highlights.splitlines()) else "tail"
    return Diagnostics(highlights=highlights, reports_tail=reports_tail, source=source)


def summarize(
    result: TestRunResult,
    reports_tail: str,
    records: Sequence[FailureRecord] = (),
) -> str:
    lines = [
        f"tool: {result.tool}",
        f"executed: {str(result.executed).lower()}",
        f"exitCode: {result.exit_code if result.executed else '(n/a)'}",
        f"command: {result.command}",
        "",
    ]
    found = [m.group(0).strip() for m in SUMMARY_LINE_RE.finditer(result.raw_output or "")]
    if found:
        lines.extend(found)
    elif reports_tail:
        lines.extend(reports_tail.splitlines()[-SUMMARY_TAIL_LINES:])
    elif not result.executed:
        lines.append(result.raw_output)

    if records:
        shown = min(len(records), SURFACED_FAILURES)
        lines.append(f"Failures surfaced: {shown} of {len(records)}")
    return "\n".join(lines).strip()


def render_failures(records: Sequence[FailureRecord], excerpt_chars: int = STACK_EXCERPT_CHARS) -> str:
    """First three records verbatim (truncated); the rest as a count."""
    blocks = []
    for record in records[:SURFACED_FAILURES]:
        header = f"[{record.kind.value}] {record.test_identifier}"
        if record.message:
            header += f": {record.message}"
        blocks.append(f"{header}\n{truncate_head(record.stack_excerpt, excerpt_chars)}".rstrip())
    remaining = len(records) - SURFACED_FAILURES
    if remaining > 0:
        blocks.append(f"...and {remaining} more failure(s)/error(s)")
    return "\n\n".join(blocks)
