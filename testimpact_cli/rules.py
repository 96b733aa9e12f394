"""Deterministic, signature-based suggestions used when no LLM answers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

HEADER = "Fallback suggestions (rule-based):"
GENERIC_ADVICE = (
    "- No specific signature detected. Re-run selected tests with verbose logs "
    "and inspect diffs for edge cases."
)


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern
    advice: Tuple[str, ...]


RULES: List[Rule] = [
    Rule(
        "classpath",
        re.compile(r"ClassNotFoundException|NoClassDefFoundError|cannot find symbol", re.IGNORECASE),
        (
            "- Java classpath/compile issue: verify dependency provides missing class, "
            "and package/class names match.",
            "- Try: mvn -U -e -X clean test",
        ),
    ),
    Rule(
        "assertion",
        re.compile(r"AssertionError|AssertionFailedError|expected:.*but was:", re.IGNORECASE | re.DOTALL),
        (
            "- Test assertion mismatch: adjust expected values or fix business logic "
            "to align with contract.",
        ),
    ),
    Rule(
        "dependency",
        re.compile(r"Could not (find|resolve) (artifact|dependencies)", re.IGNORECASE),
        (
            "- Maven dependency resolution issue: verify coordinates and repo availability; "
            "clear ~/.m2 cache.",
        ),
    ),
    Rule(
        "spring-context",
        re.compile(r"Failed to load ApplicationContext|UnsatisfiedDependencyException", re.IGNORECASE),
        (
            "- Spring context failed to start: check @MockBean coverage for new constructor "
            "dependencies and the slice annotation of the failing test.",
        ),
    ),
    Rule(
        "no-tests",
        re.compile(r"No tests (found|matching)", re.IGNORECASE),
        (
            "- Test filter matched nothing: confirm the selected class names still exist "
            "after renames.",
        ),
    ),
]


class RuleEngine:
    """Matches diagnostics text against known failure signatures."""

    def __init__(self, rules: List[Rule] = RULES):
        self.rules = rules

    def matches(self, text: str) -> List[Rule]:
        return [rule for rule in self.rules if rule.pattern.search(text or "")]

    def suggest(self, text: str) -> str:
        lines = [HEADER]
        for rule in self.matches(text):
            lines.extend(rule.advice)
        if len(lines) == 1:
            lines.append(GENERIC_ADVICE)
        return "```\n" + "\n".join(lines) + "\n```"
