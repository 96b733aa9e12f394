"""Build-tool detection and targeted test execution (Maven or Gradle)."""

from __future__ import annotations

import logging
import os
import shlex
import stat
import subprocess
import tempfile
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .models import TestRunResult, TestSelection

logger = logging.getLogger(__name__)

# Run @Disabled tests too, so previously-suppressed tests get exercised.
FORCE_DISABLED = "-Djunit.jupiter.conditions.deactivate=*"

# Gradle forks the test JVM, so the property has to be set on every Test task.
GRADLE_INIT_SCRIPT = """allprojects {
    tasks.withType(Test).configureEach {
        systemProperty 'junit.jupiter.conditions.deactivate', '*'
    }
}
"""


class BuildToolError(Exception):
    """Raised when no command can be built for the detected tool."""


class BuildToolKind(str, Enum):
    MAVEN = "maven"
    GRADLE = "gradle"
    UNKNOWN = "unknown"


def detect(project_root: Path) -> BuildToolKind:
    """Presence-based detection: ``pom.xml`` first, then the ``gradlew`` wrapper."""
    if (project_root / "pom.xml").is_file():
        return BuildToolKind.MAVEN
    if (project_root / "gradlew").is_file():
        return BuildToolKind.GRADLE
    return BuildToolKind.UNKNOWN


def maven_command(selection: TestSelection) -> List[str]:
    specs = []
    for cls in selection.classes:
        methods = selection.method_filters.get(cls)
        specs.append(f"{cls}#{'+'.join(methods)}" if methods else cls)
    return [
        "mvn", "-B",
        "-DskipITs=true",
        "-DfailIfNoTests=false",
        "-Dsurefire.failIfNoSpecifiedTests=false",
        FORCE_DISABLED,
        f"-Dtest={','.join(specs)}",
        "test",
    ]


def gradle_command(selection: TestSelection, init_script: Optional[Path] = None) -> List[str]:
    cmd = ["./gradlew", "test"]
    for cls in selection.classes:
        methods = selection.method_filters.get(cls)
        if methods:
            for method in methods:
                cmd.extend(["--tests", f"{cls}.{method}"])
        else:
            cmd.extend(["--tests", cls])
    if init_script is not None:
        cmd.extend(["--init-script", str(init_script)])
    cmd.extend([FORCE_DISABLED, "--no-daemon", "--console=plain"])
    return cmd


class BuildAdapter:
    """Runs exactly the selected test classes through the detected build tool."""

    def __init__(self, project_root: Path):
        self.project_root = project_root

    def detect(self) -> BuildToolKind:
        return detect(self.project_root)

    def command_for(
        self, kind: BuildToolKind, selection: TestSelection, init_script: Optional[Path] = None
    ) -> List[str]:
        if kind is BuildToolKind.MAVEN:
            return maven_command(selection)
        if kind is BuildToolKind.GRADLE:
            return gradle_command(selection, init_script)
        raise BuildToolError(f"No command for build tool '{kind.value}'")

    def run(self, kind: BuildToolKind, selection: TestSelection) -> TestRunResult:
        """Run synchronously and capture combined output and exit code."""
        if selection.is_empty:
            return TestRunResult.no_tests("No targeted unit tests matched heuristics. Skipping selective run.")
        if kind is BuildToolKind.UNKNOWN:
            return TestRunResult.no_project("No supported build tool detected (no pom.xml or gradlew).")

        init_script: Optional[Path] = None
        if kind is BuildToolKind.GRADLE:
            wrapper = self.project_root / "gradlew"
            if not wrapper.is_file():
                return TestRunResult.no_project("gradlew not found.")
            self._make_executable(wrapper)
            init_script = self._write_init_script()

        try:
            return self._execute(kind, self.command_for(kind, selection, init_script))
        finally:
            if init_script is not None:
                init_script.unlink(missing_ok=True)

    def _execute(self, kind: BuildToolKind, cmd: List[str]) -> TestRunResult:
        display = shlex.join(cmd)
        logger.info("Running %s", display)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.project_root),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as exc:
            logger.warning("Build tool executable missing: %s", exc)
            return TestRunResult(True, 127, display, f"Build tool not found: {exc}", kind.value)

        return TestRunResult(True, proc.returncode, display, proc.stdout or "", kind.value)

    @staticmethod
    def _write_init_script() -> Optional[Path]:
        try:
            with tempfile.NamedTemporaryFile(
                "w", prefix="testimpact-", suffix=".gradle", delete=False, encoding="utf-8"
            ) as handle:
                handle.write(GRADLE_INIT_SCRIPT)
                return Path(handle.name)
        except OSError as exc:
            logger.warning("Could not write Gradle init script, @Disabled tests stay skipped: %s", exc)
            return None

    @staticmethod
    def _make_executable(path: Path) -> None:
        try:
            mode = path.stat().st_mode
            os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as exc:
            logger.debug("Could not chmod %s: %s", path, exc)
