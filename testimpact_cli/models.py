"""Core data models passed between the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .config import MAX_SELECTED_CLASSES


class ChangeStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"

    @classmethod
    def parse(cls, raw: str) -> "ChangeStatus":
        """Map review-platform words and git name-status letters to a status."""
        value = (raw or "").strip()
        lowered = value.lower()
        if lowered in _STATUS_WORDS:
            return _STATUS_WORDS[lowered]
        letter = value[:1].upper()
        return _STATUS_LETTERS.get(letter, cls.MODIFIED)


_STATUS_WORDS = {
    "added": ChangeStatus.ADDED,
    "modified": ChangeStatus.MODIFIED,
    "changed": ChangeStatus.MODIFIED,
    "copied": ChangeStatus.ADDED,
    "removed": ChangeStatus.REMOVED,
    "deleted": ChangeStatus.REMOVED,
    "renamed": ChangeStatus.RENAMED,
}

_STATUS_LETTERS = {
    "A": ChangeStatus.ADDED,
    "C": ChangeStatus.ADDED,
    "M": ChangeStatus.MODIFIED,
    "T": ChangeStatus.MODIFIED,
    "D": ChangeStatus.REMOVED,
    "R": ChangeStatus.RENAMED,
}


@dataclass(frozen=True)
class ChangedFile:
    path: str
    status: ChangeStatus = ChangeStatus.MODIFIED

    def __str__(self) -> str:
        return f"{self.status.value} {self.path}"


@dataclass(frozen=True)
class ProjectLayout:
    """Where main and test sources live inside the analysed project."""
    root: Path
    main_root: str = "src/main/java"
    test_root: str = "src/test/java"
    extension: str = ".java"

    @property
    def main_dir(self) -> Path:
        return self.root / self.main_root

    @property
    def test_dir(self) -> Path:
        return self.root / self.test_root

    def is_main_source(self, path: str) -> bool:
        return path.startswith(self.main_root.rstrip("/") + "/") and path.endswith(self.extension)

    def is_test_source(self, path: str) -> bool:
        return path.startswith(self.test_root.rstrip("/") + "/") and path.endswith(self.extension)


@dataclass
class ImpactEntry:
    candidate_test_paths: Set[str] = field(default_factory=set)
    candidate_test_names: Set[str] = field(default_factory=set)

    def add(self, rel_path: str, name: str) -> None:
        self.candidate_test_paths.add(rel_path)
        if name:
            self.candidate_test_names.add(name)


class ImpactIndex:
    """Changed source path -> candidate tests.

    Listings are deduplicated and sorted so reports are reproducible.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, ImpactEntry] = {}

    def entry(self, changed_path: str) -> ImpactEntry:
        if changed_path not in self._entries:
            self._entries[changed_path] = ImpactEntry()
        return self._entries[changed_path]

    def get(self, changed_path: str) -> Optional[ImpactEntry]:
        return self._entries.get(changed_path)

    def __contains__(self, changed_path: object) -> bool:
        return changed_path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def items(self) -> Iterable[Tuple[str, ImpactEntry]]:
        return self._entries.items()

    def is_empty(self) -> bool:
        return not any(e.candidate_test_paths for e in self._entries.values())

    def test_paths(self) -> List[str]:
        paths: Set[str] = set()
        for entry in self._entries.values():
            paths.update(entry.candidate_test_paths)
        return sorted(paths)

    def test_names(self) -> List[str]:
        """Simple test class names, first-seen by changed-file order."""
        seen: Dict[str, None] = {}
        for entry in self._entries.values():
            for name in sorted(entry.candidate_test_names):
                seen.setdefault(name, None)
        return list(seen)

    def candidate_listing(self) -> str:
        return "\n".join(self.test_paths())


@dataclass(frozen=True)
class Endpoint:
    method: str
    path: str
    controller_name: str
    handler_name: str
    reason: str = ""

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.method, self.path, self.controller_name, self.handler_name)

    def __str__(self) -> str:
        return f"{self.method} {self.path} ({self.controller_name}#{self.handler_name}) - {self.reason}"


class EndpointSet:
    """Ordered endpoint collection holding at most one entry per identity.

    When two endpoints share an identity the first reason is kept.
    """

    def __init__(self, endpoints: Iterable[Endpoint] = ()) -> None:
        self._items: Dict[Tuple[str, str, str, str], Endpoint] = {}
        for endpoint in endpoints:
            self.add(endpoint)

    def add(self, endpoint: Endpoint) -> bool:
        if endpoint.identity in self._items:
            return False
        self._items[endpoint.identity] = endpoint
        return True

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(self._items.values())

    def to_list(self) -> List[Endpoint]:
        return list(self._items.values())


@dataclass
class TestSelection:
    """Test classes to run, with optional per-class method filters."""
    __test__ = False

    classes: List[str] = field(default_factory=list)
    method_filters: Dict[str, List[str]] = field(default_factory=dict)
    rationale: str = ""

    def __post_init__(self) -> None:
        unique: Dict[str, None] = {}
        for name in self.classes:
            name = name.strip()
            if name:
                unique.setdefault(name, None)
        self.classes = list(unique)[:MAX_SELECTED_CLASSES]
        kept = set(self.classes)
        self.method_filters = {
            cls: list(methods)
            for cls, methods in self.method_filters.items()
            if cls in kept and methods
        }

    @property
    def is_empty(self) -> bool:
        return not self.classes

    def __len__(self) -> int:
        return len(self.classes)


@dataclass(frozen=True)
class TestRunResult:
    __test__ = False

    executed: bool
    exit_code: int
    command: str
    raw_output: str
    tool: str

    @property
    def failed(self) -> bool:
        return self.executed and self.exit_code != 0

    @classmethod
    def no_tests(cls, message: str) -> "TestRunResult":
        return cls(False, 0, "(no tests executed)", message, "(none)")

    @classmethod
    def no_project(cls, message: str) -> "TestRunResult":
        return cls(False, 0, "(no project detected)", message, "(none)")


class FailureKind(str, Enum):
    FAILURE = "failure"
    ERROR = "error"


@dataclass(frozen=True)
class FailureRecord:
    test_identifier: str
    kind: FailureKind
    message: str
    stack_excerpt: str


@dataclass
class Diagnostics:
    """What the harvester found for one run."""
    records: List[FailureRecord] = field(default_factory=list)
    highlights: str = ""
    reports_tail: str = ""
    source: str = "none"

    @property
    def has_failures(self) -> bool:
        return bool(self.records)

    def text(self) -> str:
        """All diagnostic text, used for rule matching and prompts."""
        parts = [f"{r.test_identifier}: {r.message}\n{r.stack_excerpt}" for r in self.records]
        if self.highlights:
            parts.append(self.highlights)
        return "\n".join(parts)


@dataclass
class AnalysisContext:
    """Everything the analysis stage needs, threaded through the pipeline."""
    changed_files: List[ChangedFile]
    selection: TestSelection
    run_result: TestRunResult
    build_tool: str = "unknown"
    summary: str = ""
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    candidate_listing: str = ""
    endpoints: List[Endpoint] = field(default_factory=list)
    diffs: Dict[str, str] = field(default_factory=dict)
    repo: str = ""
    change_id: str = ""
    base_sha: str = ""
    head_sha: str = ""
