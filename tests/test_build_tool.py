"""Tests for build tool detection and targeted execution."""

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from testimpact_cli.build_tool import (
    FORCE_DISABLED,
    BuildAdapter,
    BuildToolError,
    BuildToolKind,
    detect,
    gradle_command,
    maven_command,
)
from testimpact_cli.models import TestSelection


class TestDetect:
    def test_maven_first(self, temp_dir):
        (temp_dir / "pom.xml").write_text("<project/>")
        (temp_dir / "gradlew").write_text("#!/bin/sh\n")
        assert detect(temp_dir) is BuildToolKind.MAVEN

    def test_gradle_wrapper(self, temp_dir):
        (temp_dir / "gradlew").write_text("#!/bin/sh\n")
        assert detect(temp_dir) is BuildToolKind.GRADLE

    def test_unknown(self, temp_dir):
        (temp_dir / "build.gradle").write_text("")
        assert detect(temp_dir) is BuildToolKind.UNKNOWN


class TestCommands:
    """Exact invocation strings."""

    def test_maven(self):
        selection = TestSelection(["AuthControllerTest", "UserServiceTest"], {"UserServiceTest": ["a", "b"]})

        assert maven_command(selection) == [
            "mvn", "-B", "-DskipITs=true", "-DfailIfNoTests=false",
            "-Dsurefire.failIfNoSpecifiedTests=false", FORCE_DISABLED,
            "-Dtest=AuthControllerTest,UserServiceTest#a+b", "test",
        ]

    def test_gradle(self):
        selection = TestSelection(["AuthControllerTest", "UserServiceTest"], {"UserServiceTest": ["a", "b"]})

        assert gradle_command(selection) == [
            "./gradlew", "test",
            "--tests", "AuthControllerTest",
            "--tests", "UserServiceTest.a",
            "--tests", "UserServiceTest.b",
            FORCE_DISABLED, "--no-daemon", "--console=plain",
        ]

    def test_unknown_has_no_command(self, temp_dir):
        with pytest.raises(BuildToolError):
            BuildAdapter(temp_dir).command_for(BuildToolKind.UNKNOWN, TestSelection(["A"]))


class TestBuildAdapterRun:
    """Execution paths with subprocess mocked."""

    def test_empty_selection_never_executes(self, temp_dir, monkeypatch):
        (temp_dir / "pom.xml").write_text("<project/>")
        monkeypatch.setattr(subprocess, "run", lambda *a, **k: pytest.fail("should not run"))

        result = BuildAdapter(temp_dir).run(BuildToolKind.MAVEN, TestSelection([]))

        assert result.executed is False
        assert result.exit_code == 0
        assert result.command == "(no tests executed)"

    def test_unknown_tool_is_reported(self, temp_dir):
        result = BuildAdapter(temp_dir).run(BuildToolKind.UNKNOWN, TestSelection(["A"]))

        assert result.executed is False
        assert result.command == "(no project detected)"
        assert "No supported build tool" in result.raw_output

    def test_gradle_without_wrapper(self, temp_dir):
        result = BuildAdapter(temp_dir).run(BuildToolKind.GRADLE, TestSelection(["A"]))
        assert result.raw_output == "gradlew not found."

    def test_runs_maven_and_captures_output(self, temp_dir, monkeypatch):
        (temp_dir / "pom.xml").write_text("<project/>")
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["cmd"] = cmd
            seen["kwargs"] = kwargs
            return SimpleNamespace(returncode=1, stdout="Tests run: 2, Failures: 1\nBUILD FAILURE")

        monkeypatch.setattr(subprocess, "run", fake_run)

        result = BuildAdapter(temp_dir).run(BuildToolKind.MAVEN, TestSelection(["AuthControllerTest"]))

        assert result.executed and result.failed
        assert result.exit_code == 1
        assert result.tool == "maven"
        assert "-Dtest=AuthControllerTest" in result.command
        assert seen["kwargs"]["stderr"] == subprocess.STDOUT
        assert seen["kwargs"]["cwd"] == str(temp_dir)
        assert "BUILD FAILURE" in result.raw_output

    def test_gradle_wrapper_made_executable(self, temp_dir, monkeypatch):
        wrapper = temp_dir / "gradlew"
        wrapper.write_text("#!/bin/sh\n")
        wrapper.chmod(0o644)
        monkeypatch.setattr(subprocess, "run", lambda cmd, **k: SimpleNamespace(returncode=0, stdout="BUILD SUCCESSFUL"))

        result = BuildAdapter(temp_dir).run(BuildToolKind.GRADLE, TestSelection(["A"]))

        assert result.exit_code == 0
        assert wrapper.stat().st_mode & 0o100

    def test_missing_executable(self, temp_dir, monkeypatch):
        def missing(cmd, **kwargs):
            raise FileNotFoundError("mvn")

        monkeypatch.setattr(subprocess, "run", missing)

        result = BuildAdapter(temp_dir).run(BuildToolKind.MAVEN, TestSelection(["A"]))

        assert result.executed
        assert result.exit_code == 127

    def test_gradle_forwards_force_disabled_through_init_script(self, temp_dir, monkeypatch):
        (temp_dir / "gradlew").write_text("#!/bin/sh\n")
        seen = {}

        def fake_run(cmd, **kwargs):
            script = Path(cmd[cmd.index("--init-script") + 1])
            seen["script"] = script
            seen["text"] = script.read_text(encoding="utf-8")
            return SimpleNamespace(returncode=0, stdout="BUILD SUCCESSFUL")

        monkeypatch.setattr(subprocess, "run", fake_run)

        result = BuildAdapter(temp_dir).run(BuildToolKind.GRADLE, TestSelection(["AuthControllerTest"]))

        assert result.exit_code == 0
        assert "systemProperty 'junit.jupiter.conditions.deactivate', '*'" in seen["text"]
        assert "tasks.withType(Test)" in seen["text"]
        assert not seen["script"].exists()
