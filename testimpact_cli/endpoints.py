"""Affected HTTP endpoint extraction from Spring-style routing annotations."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .models import ChangedFile, Endpoint, EndpointSet, ProjectLayout

logger = logging.getLogger(__name__)

ANY_METHOD = "*"
REASON_MODIFIED = "controller modified"

_VERB_ANNOTATIONS = {
    "GetMapping": "GET",
    "PostMapping": "POST",
    "PutMapping": "PUT",
    "DeleteMapping": "DELETE",
    "PatchMapping": "PATCH",
    "RequestMapping": None,
}

_CLASS_DECL = re.compile(
    r"^[ \t]*(?:@[\w.]+(?:\s*\([^()]*\))?\s+)*"
    r"(?:(?:public|protected|private|abstract|final|static|sealed)\s+)*"
    r"(?P<kw>class|interface|record)\s+(?P<name>\w+)",
    re.MULTILINE,
)
_MAPPING = re.compile(r"@(" + "|".join(_VERB_ANNOTATIONS) + r")\b")
_ROUTING_MARKER = re.compile(r"@(?:RestController|Controller)\b|@(?:" + "|".join(_VERB_ANNOTATIONS) + r")\b")
_ANNOTATION = re.compile(r"\s*@(?!interface\b)[\w.]+")
_OPEN_PAREN = re.compile(r"\s*\(")
_HANDLER_NAME = re.compile(r"[^;{}()]*?\b(\w+)\s*\(")
_STRING = re.compile(r'"((?:[^"\\]|\\.)*)"')
_NAMED_PATH = re.compile(r'\b(?:value|path)\s*=\s*(\{[^}]*\}|"(?:[^"\\]|\\.)*")')
_NAMED_ARG = re.compile(r"\b\w+\s*=")
_REQUEST_METHOD = re.compile(r"RequestMethod\s*\.\s*(\w+)")


def normalize_path(path: str) -> str:
    """Collapse repeated separators and drop the trailing one; root stays ``/``."""
    path = re.sub(r"/+", "/", "/" + path.strip())
    if len(path) > 1:
        path = path.rstrip("/")
    return path or "/"


def _closing_paren(text: str, start: int) -> int:
    """Index just past the group opened at ``text[start]``, or -1 if unbalanced.

    Parentheses inside string literals do not count, so arguments such as
    ``"hasRole('ADMIN')"`` or ``"Login (v2)"`` are skipped whole.
    """
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
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def _annotation_args(text: str, pos: int) -> Tuple[Optional[str], int]:
    """Argument text of the annotation whose name ends at ``pos``, and the index after it."""
    m = _OPEN_PAREN.match(text, pos)
    if not m:
        return None, pos
    end = _closing_paren(text, m.end() - 1)
    if end < 0:
        return None, pos
    return text[m.end():end - 1], end


def _skip_annotations(text: str, pos: int) -> int:
    while True:
        m = _ANNOTATION.match(text, pos)
        if not m:
            return pos
        _, pos = _annotation_args(text, m.end())


def _annotation_paths(args: Optional[str]) -> List[str]:
    if args is None:
        return [""]
    named = _NAMED_PATH.search(args)
    if named:
        source = named.group(1)
    else:
        first_named = _NAMED_ARG.search(args)
        source = args[: first_named.start()] if first_named else args
    return _STRING.findall(source) or [""]


def _annotation_methods(annotation: str, args: Optional[str]) -> List[str]:
    verb = _VERB_ANNOTATIONS[annotation]
    if verb:
        return [verb]
    found = _REQUEST_METHOD.findall(args or "")
    return [m.upper() for m in dict.fromkeys(found)] or [ANY_METHOD]


@dataclass(frozen=True)
class Route:
    method: str
    path: str
    handler: str


@dataclass
class RoutingClass:
    name: str
    base_paths: List[str]
    routes: List[Route]
    has_class_mapping: bool

    def endpoints(self, reason: str) -> List[Endpoint]:
        out = []
        if not self.routes:
            if self.has_class_mapping:
                for base in self.base_paths:
                    out.append(Endpoint(ANY_METHOD, normalize_path(base), self.name, ANY_METHOD, reason))
            return out
        for base in self.base_paths:
            for route in self.routes:
                path = normalize_path(f"{base}/{route.path}")
                out.append(Endpoint(route.method, path, self.name, route.handler, reason))
        return out


def parse_routing(text: str, fallback_name: str = "") -> Optional[RoutingClass]:
    """Parse one source file; returns None when it carries no routing declarations."""
    if not _ROUTING_MARKER.search(text):
        return None

    decl = _CLASS_DECL.search(text)
    name = decl.group("name") if decl else fallback_name
    split = decl.start("kw") if decl else 0
    header, body = text[:split], text[split:]

    base_paths = [""]
    has_class_mapping = False
    for m in _MAPPING.finditer(header):
        if m.group(1) == "RequestMapping":
            has_class_mapping = True
            base_paths = _annotation_paths(_annotation_args(header, m.end())[0])

    routes: List[Route] = []
    for m in _MAPPING.finditer(body):
        args, end = _annotation_args(body, m.end())
        handler = _HANDLER_NAME.match(body, _skip_annotations(body, end))
        if not handler:
            continue
        for method in _annotation_methods(m.group(1), args):
            for seg in _annotation_paths(args):
                routes.append(Route(method, seg, handler.group(1)))

    return RoutingClass(name=name, base_paths=base_paths, routes=routes, has_class_mapping=has_class_mapping)


def reference_regex(leaf: str) -> re.Pattern:
    """Constructor call, class literal or injection of ``leaf``."""
    name = re.escape(leaf)
    return re.compile(
        rf"\bnew\s+{name}\s*(?:<[^>()]*>)?\s*\("
        rf"|\b{name}\s*\.\s*class\b"
        rf"|@(?:Autowired|Inject|Resource|MockBean)\b[^;{{]*?\b{name}\b"
        rf"|(?:\bprivate|\bprotected|\bpublic|[(,])\s*(?:final\s+)?{name}(?:<[^>]*>)?\s+\w+\s*[;=,)]"
    )


class EndpointExtractor:
    """Finds endpoints that a change touches directly or through a dependency."""

    def __init__(self, layout: ProjectLayout):
        self.layout = layout
        self._texts: Dict[str, Optional[str]] = {}

    def _read(self, rel: str) -> Optional[str]:
        if rel not in self._texts:
            path = self.layout.root / rel
            try:
                self._texts[rel] = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else None
            except OSError as exc:
                logger.warning("Failed to read %s: %s", rel, exc)
                self._texts[rel] = None
        return self._texts[rel]

    def _main_sources(self) -> List[str]:
        if not self.layout.main_dir.is_dir():
            return []
        return sorted(
            p.relative_to(self.layout.root).as_posix()
            for p in self.layout.main_dir.rglob(f"*{self.layout.extension}")
            if p.is_file()
        )

    def extract(self, changed_files: Sequence[ChangedFile]) -> List[Endpoint]:
        found = EndpointSet()
        changed_plain: List[str] = []

        for cf in changed_files:
            if not self.layout.is_main_source(cf.path):
                continue
            text = self._read(cf.path)
            routing = parse_routing(text, Path(cf.path).stem) if text is not None else None
            if routing is not None:
                for endpoint in routing.endpoints(REASON_MODIFIED):
                    found.add(endpoint)
            else:
                changed_plain.append(Path(cf.path).stem)

        if changed_plain:
            self._referencing_pass(found, changed_plain)

        return found.to_list()

    def _referencing_pass(self, found: EndpointSet, changed_leaves: List[str]) -> None:
        patterns = [(leaf, reference_regex(leaf)) for leaf in dict.fromkeys(changed_leaves)]
        for rel in self._main_sources():
            text = self._read(rel)
            if text is None:
                continue
            routing = parse_routing(text, Path(rel).stem)
            if routing is None:
                continue
            for leaf, pattern in patterns:
                if leaf == routing.name or not pattern.search(text):
                    continue
                for endpoint in routing.endpoints(f"references changed class {leaf}"):
                    found.add(endpoint)


def extract_endpoints(changed_files: Sequence[ChangedFile], layout: ProjectLayout) -> List[Endpoint]:
    return EndpointExtractor(layout).extract(changed_files)
