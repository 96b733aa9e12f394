"""Optional LLM-assisted refinement of the heuristic test selection."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import AnalyzerConfig, MAX_SELECTED_CLASSES
from .llm import ChatProvider, user_messages
from .models import ChangedFile, TestSelection

logger = logging.getLogger(__name__)

PACKAGE_INDEX_MAX_CHARS = 8_000

PROMPT_TEMPLATE = """You are a senior Java/Spring testing expert. Determine the minimal-but-sufficient unit tests to run for this change list.
Input:
- Changed files (with status):
{files}

- Heuristic candidate test classes (initial): {heuristic}

- Test index (package -> tests):
{package_index}

- Diffs (truncated):
{diffs}

Task:
- Return a strict JSON object with keys:
  {{
    "test_classes": ["SimpleTestName1", "SimpleTestName2", ...],
    "test_methods": [{{"class": "SimpleTestName1", "methods": ["methodA", "methodB"]}}],
    "reasons": "brief rationale for your selections and exclusions"
  }}
Rules:
- Only include existing tests (by simple class name, e.g. FooTest), avoid duplicates, keep under ~50 unless necessary.
- Prefer tests that directly cover modified code paths, controllers/services touched, and their slices.
- If initial set is already minimal, you may return the same list with reasons.
"""


class Refiner:
    """Second-stage selection interface."""

    def refine(
        self,
        heuristic_classes: Sequence[str],
        changed_files: Sequence[ChangedFile],
        package_index: Mapping[str, Sequence[str]],
        per_file_diff: Mapping[str, str],
    ) -> TestSelection:
        raise NotImplementedError


class PassthroughRefiner(Refiner):
    """Keeps the heuristic selection as-is."""

    def __init__(self, reason: str = "LLM test selector disabled; keep heuristic selection."):
        self.reason = reason

    def refine(self, heuristic_classes, changed_files, package_index, per_file_diff) -> TestSelection:
        return TestSelection(classes=list(heuristic_classes), rationale=self.reason)


class LLMRefiner(Refiner):
    """Asks a chat provider for a refined selection under a strict JSON contract.

    Any failure degrades to the heuristic selection with a rationale that
    names the reason; a non-empty heuristic set never comes back empty.
    """

    def __init__(self, provider: Optional[ChatProvider], config: AnalyzerConfig):
        self.provider = provider
        self.config = config

    def refine(self, heuristic_classes, changed_files, package_index, per_file_diff) -> TestSelection:
        heuristic = list(heuristic_classes)

        def fallback(reason: str) -> TestSelection:
            logger.info("Test selector fallback: %s", reason)
            return TestSelection(classes=heuristic, rationale=reason)

        if self.provider is None:
            return fallback("LLM provider not configured; keep heuristic selection.")

        try:
            prompt = self.build_prompt(heuristic, changed_files, package_index, per_file_diff)
            raw = self.provider.complete(
                user_messages(prompt),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )

            self._audit("raw.txt", raw)
            json_text = extract_first_json_object(raw)
            if not json_text:
                return fallback("No JSON parsed; keep heuristic selection.")
            self._audit("parsed.json", json_text)

            parsed = parse_selection_json(json_text)
        except Exception as exc:
            return fallback(f"LLM selector error: {exc}; keep heuristic selection.")

        classes = parsed["test_classes"]
        if not classes:
            return fallback("LLM returned no test_classes; keep heuristic selection.")

        return TestSelection(
            classes=classes[:MAX_SELECTED_CLASSES],
            method_filters=parsed["test_methods"],
            rationale=parsed["reasons"] or "LLM-refined selection.",
        )

    def build_prompt(
        self,
        heuristic: Sequence[str],
        changed_files: Sequence[ChangedFile],
        package_index: Mapping[str, Sequence[str]],
        per_file_diff: Mapping[str, str],
    ) -> str:
        files = "\n".join(str(cf) for cf in list(changed_files)[: self.config.selector_max_files])

        diffs: List[str] = []
        budget = self.config.selector_max_diff_chars
        used = 0
        for path, diff in per_file_diff.items():
            if used >= budget:
                break
            chunk = f"\n=== DIFF: {path} ===\n{diff}"
            take = chunk[: budget - used]
            diffs.append(take)
            used += len(take)

        pkg_lines: List[str] = []
        pkg_used = 0
        for pkg, tests in package_index.items():
            line = f"{pkg} -> {list(tests)}"
            pkg_lines.append(line)
            pkg_used += len(line) + 1
            if pkg_used > PACKAGE_INDEX_MAX_CHARS:
                break

        return PROMPT_TEMPLATE.format(
            files=files or "(none)",
            heuristic=list(heuristic),
            package_index="\n".join(pkg_lines) or "(empty)",
            diffs="".join(diffs) or "(none)",
        )

    def _audit(self, name: str, content: str) -> None:
        audit_dir = Path(self.config.audit_dir)
        if not audit_dir.is_absolute():
            audit_dir = Path(self.config.project_root) / audit_dir
        try:
            audit_dir.mkdir(parents=True, exist_ok=True)
            (audit_dir / name).write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write selector audit file %s: %s", name, exc)


def extract_first_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` in ``text``, or ``""``.

    Counts brace depth from each ``{`` in turn, ignoring braces inside JSON
    string literals, so prose around the object does not matter.
    """
    if not text:
        return ""
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return ""


_STRING_ITEM = re.compile(r'"([^"]+)"')


def _dedupe(items: Sequence[Any]) -> List[str]:
    out: Dict[str, None] = {}
    for item in items:
        if isinstance(item, str) and item.strip():
            out.setdefault(item.strip(), None)
    return list(out)


def parse_selection_json(json_text: str) -> Dict[str, Any]:
    """Read ``test_classes``, ``test_methods`` and ``reasons``.

    Strict JSON first; models often emit comments or trailing commas, so a
    regex reading of the same keys is used when ``json.loads`` fails.
    """
    try:
        data = json.loads(json_text)
    except json.JSONDecodeError:
        return _parse_selection_loose(json_text)
    if not isinstance(data, dict):
        return {"test_classes": [], "test_methods": {}, "reasons": ""}

    classes = data.get("test_classes")
    classes = _dedupe(classes) if isinstance(classes, list) else []

    methods: Dict[str, List[str]] = {}
    items = data.get("test_methods")
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        cls = item.get("class")
        names = item.get("methods")
        if isinstance(cls, str) and isinstance(names, list):
            methods[cls.strip()] = _dedupe(names)

    reasons = data.get("reasons")
    if isinstance(reasons, list):
        reasons = "; ".join(str(r) for r in reasons)
    return {"test_classes": classes, "test_methods": methods, "reasons": str(reasons or "")}


def _parse_selection_loose(json_text: str) -> Dict[str, Any]:
    classes: List[str] = []
    m = re.search(r'"test_classes"\s*:\s*\[(.*?)\]', json_text, re.DOTALL)
    if m:
        classes = _dedupe(_STRING_ITEM.findall(m.group(1)))

    methods: Dict[str, List[str]] = {}
    item = re.compile(r'\{\s*"class"\s*:\s*"([^"]+)"\s*,\s*"methods"\s*:\s*\[(.*?)\]\s*\}', re.DOTALL)
    for cls, arr in item.findall(json_text):
        methods[cls.strip()] = _dedupe(_STRING_ITEM.findall(arr))

    r = re.search(r'"reasons"\s*:\s*"((?:[^"\\]|\\.)*)"', json_text, re.DOTALL)
    return {"test_classes": classes, "test_methods": methods, "reasons": r.group(1) if r else ""}


def make_refiner(config: AnalyzerConfig, provider: Optional[ChatProvider]) -> Refiner:
    """Choose the refiner implementation from configuration."""
    if not config.selector_enabled:
        return PassthroughRefiner()
    return LLMRefiner(provider, config)
