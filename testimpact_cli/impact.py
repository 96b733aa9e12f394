"""Map changed source files to the tests most likely to exercise them.

Three independent strategies feed each changed file's candidates:

* name heuristics - ``FooTest``, ``TestFoo`` and ``FooTests`` beside the
  mirrored package directory;
* co-located discovery - every test under the same package directory;
* reference scanning - any test whose text imports, instantiates, injects or
  names the changed class.

This is plain text matching, not compilation: it over-matches on purpose.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .endpoints import EndpointExtractor
from .models import ChangedFile, Endpoint, ImpactIndex, ProjectLayout

logger = logging.getLogger(__name__)

TEST_SUFFIXES = ("Test", "Tests", "IT", "TestCase", "Spec")
NAME_PATTERNS = ("{leaf}Test", "Test{leaf}", "{leaf}Tests")

# Annotations that bind a test to a class by name.
_BIND_ANNOTATIONS = (
    "WebMvcTest", "WebFluxTest", "DataJpaTest", "JsonTest", "RestClientTest",
    "Import", "ContextConfiguration", "SpringBootTest",
)
_FIELD_ANNOTATIONS = ("MockBean", "SpyBean", "Mock", "Spy", "InjectMocks", "Autowired", "Inject", "MockitoBean")


def is_test_name(stem: str) -> bool:
    return stem.endswith(TEST_SUFFIXES) or (stem.startswith("Test") and len(stem) > 4)


def split_source_path(rel: str, root_prefix: str, extension: str) -> Tuple[str, str]:
    """``src/main/java/a/b/Foo.java`` -> (``a/b``, ``Foo``)."""
    inner = rel[len(root_prefix.rstrip("/")) + 1:]
    if inner.endswith(extension):
        inner = inner[: -len(extension)]
    pkg_dir, _, leaf = inner.rpartition("/")
    return pkg_dir, leaf


def reference_patterns(leaf: str, fqcn: str) -> List[re.Pattern]:
    """Regexes that signal a test refers to ``leaf`` (fully qualified ``fqcn``)."""
    name = re.escape(leaf)
    patterns = [
        rf"\bimport\s+(?:static\s+)?{re.escape(fqcn)}\s*(?:;|\.)",
        rf"\b{name}\s*\.\s*class\b",
        rf"\bnew\s+{name}\s*(?:<[^>()]*>)?\s*\(",
        rf"@(?:{'|'.join(_BIND_ANNOTATIONS)})\s*\([^)]*\b{name}\b[^)]*\)",
        rf"@(?:{'|'.join(_FIELD_ANNOTATIONS)})\b(?:\s*\([^)]*\))?\s+(?:(?:private|protected|public|final|static)\s+)*{name}\b",
    ]
    return [re.compile(p) for p in patterns]


class TestTree:
    """Test-root files, read once per build."""
    __test__ = False

    def __init__(self, layout: ProjectLayout):
        self.layout = layout
        self._texts: Optional[Dict[str, str]] = None

    def exists(self) -> bool:
        return self.layout.test_dir.is_dir()

    def files(self) -> Dict[str, str]:
        """Relative path -> text for every test source file."""
        if self._texts is None:
            self._texts = {}
            if self.exists():
                for path in sorted(self.layout.test_dir.rglob(f"*{self.layout.extension}")):
                    if not path.is_file():
                        continue
                    rel = path.relative_to(self.layout.root).as_posix()
                    try:
                        self._texts[rel] = path.read_text(encoding="utf-8", errors="replace")
                    except OSError as exc:
                        logger.warning("Failed to read %s: %s", rel, exc)
        return self._texts

    def package_of(self, rel: str) -> str:
        pkg_dir, _ = split_source_path(rel, self.layout.test_root, self.layout.extension)
        return pkg_dir.replace("/", ".")


class ImpactIndexBuilder:
    """Builds the ImpactIndex and the affected-endpoint list for a change."""

    def __init__(self, layout: ProjectLayout, extractor: Optional[EndpointExtractor] = None):
        self.layout = layout
        self.tests = TestTree(layout)
        self.extractor = extractor or EndpointExtractor(layout)

    def build(self, changed_files: Sequence[ChangedFile]) -> Tuple[ImpactIndex, List[Endpoint]]:
        index = ImpactIndex()
        if not changed_files:
            return index, []

        if self.tests.exists():
            for cf in changed_files:
                if self.layout.is_main_source(cf.path):
                    self._index_main_source(index, cf.path)
                elif self.layout.is_test_source(cf.path):
                    index.entry(cf.path).add(cf.path, self.simple_name(cf.path))
        else:
            logger.info("Test root %s not found; no tests selected", self.layout.test_dir)

        endpoints = self.extractor.extract(changed_files)
        logger.debug("Impact index: %d changed file(s), %d test path(s), %d endpoint(s)",
                     len(index), len(index.test_paths()), len(endpoints))
        return index, endpoints

    def _index_main_source(self, index: ImpactIndex, rel: str) -> None:
        pkg_dir, leaf = split_source_path(rel, self.layout.main_root, self.layout.extension)
        entry = index.entry(rel)
        for found in (
            self.by_name(pkg_dir, leaf),
            self.co_located(pkg_dir),
            self.referencing(pkg_dir, leaf),
        ):
            for test_rel in found:
                entry.add(test_rel, self.simple_name(test_rel))

    def by_name(self, pkg_dir: str, leaf: str) -> List[str]:
        base = self.layout.test_root.rstrip("/") + (f"/{pkg_dir}" if pkg_dir else "")
        hits = []
        for pattern in NAME_PATTERNS:
            rel = f"{base}/{pattern.format(leaf=leaf)}{self.layout.extension}"
            if (self.layout.root / rel).is_file():
                hits.append(rel)
        return hits

    def co_located(self, pkg_dir: str) -> List[str]:
        prefix = self.layout.test_root.rstrip("/") + "/" + (pkg_dir + "/" if pkg_dir else "")
        hits = []
        for rel in self.tests.files():
            if not rel.startswith(prefix):
                continue
            if is_test_name(Path(rel).stem):
                hits.append(rel)
        return hits

    def referencing(self, pkg_dir: str, leaf: str) -> List[str]:
        fqcn = ".".join(filter(None, [pkg_dir.replace("/", "."), leaf]))
        patterns = reference_patterns(leaf, fqcn)
        same_package = re.compile(rf"\b{re.escape(leaf)}\b")
        package = pkg_dir.replace("/", ".")
        hits = []
        for rel, text in self.tests.files().items():
            if any(p.search(text) for p in patterns):
                hits.append(rel)
            elif self.tests.package_of(rel) == package and same_package.search(text):
                # Same-package classes need no import.
                hits.append(rel)
        return hits

    def simple_name(self, rel: str) -> str:
        name = Path(rel).name
        if not name.endswith(self.layout.extension):
            return ""
        return name[: -len(self.layout.extension)]

    def package_index(self) -> Dict[str, List[str]]:
        """Package -> simple test class names, for prompt context."""
        out: Dict[str, List[str]] = {}
        for rel in self.tests.files():
            stem = Path(rel).stem
            if not is_test_name(stem):
                continue
            out.setdefault(self.tests.package_of(rel) or "(default)", []).append(stem)
        return {pkg: sorted(names) for pkg, names in sorted(out.items())}


def build(changed_files: Iterable[ChangedFile], layout: ProjectLayout) -> Tuple[ImpactIndex, List[Endpoint]]:
    """Convenience wrapper around :class:`ImpactIndexBuilder`."""
    return ImpactIndexBuilder(layout).build(list(changed_files))
