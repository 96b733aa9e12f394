"""Pytest configuration and fixtures for testimpact tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
import requests

from testimpact_cli.config import AnalyzerConfig
from testimpact_cli.models import ChangedFile, ChangeStatus, ProjectLayout

ENV_KEYS = (
    "REPO", "PULL_NUMBER", "BASE_SHA", "HEAD_SHA", "SERVER_URL",
    "OPENROUTER_API_KEY", "OPENROUTER_MODEL",
    "LLM_PROVIDER", "LLM_BASE_URL", "LLM_MODEL", "LLM_API_KEY", "LLM_MAX_TOKENS",
    "ANALYZER_MAX_HIGHLIGHTS", "FAIL_ON_TEST_FAILURE", "LLM_TEST_SELECTOR",
    "LLM_SELECTOR_MAX_FILES", "LLM_SELECTOR_MAX_DIFF_CHARS",
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep CI variables and the user's config file out of every test."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TESTIMPACT_CONFIG", str(tmp_path / "no-such-config.toml"))


@pytest.fixture(autouse=True)
def _block_network(monkeypatch):
    """Fail fast if any provider tries a real HTTP call.

    Tests that exercise providers pass their own mocked session.
    """
    def _refuse(*args, **kwargs):
        raise requests.ConnectionError("network disabled in tests")

    monkeypatch.setattr(requests.Session, "post", _refuse)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to the sample Spring project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def java_project(temp_dir: Path, sample_project_path: Path) -> Path:
    """A writable copy of the sample project."""
    target = temp_dir / "project"
    shutil.copytree(sample_project_path, target)
    return target


@pytest.fixture
def layout(java_project: Path) -> ProjectLayout:
    return ProjectLayout(root=java_project)


@pytest.fixture
def config(java_project: Path) -> AnalyzerConfig:
    return AnalyzerConfig(project_root=java_project)


@pytest.fixture
def user_service_change() -> ChangedFile:
    return ChangedFile("src/main/java/com/example/demo/service/UserService.java", ChangeStatus.MODIFIED)


@pytest.fixture
def auth_controller_change() -> ChangedFile:
    return ChangedFile("src/main/java/com/example/demo/controller/AuthController.java", ChangeStatus.MODIFIED)


@pytest.fixture
def junit_failure_xml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<testsuite name="com.example.demo.controller.AuthControllerTest" tests="2" failures="1" errors="0">
  <testcase name="testLogin_ok" classname="com.example.demo.controller.AuthControllerTest" time="0.01"/>
  <testcase name="testLogin_invalidCredentials" classname="com.example.demo.controller.AuthControllerTest" time="0.02">
    <failure message="expected: &lt;401&gt; but was: &lt;200&gt;" type="org.opentest4j.AssertionFailedError">org.opentest4j.AssertionFailedError: expected: &lt;401&gt; but was: &lt;200&gt;
	at com.example.demo.controller.AuthControllerTest.testLogin_invalidCredentials(AuthControllerTest.java:31)</failure>
  </testcase>
</testsuite>
"""


def chat_response(content: str, status_code: int = 200) -> MagicMock:
    """A fake ``requests.Response`` for a chat-completion call."""
    response = MagicMock()
    response.status_code = status_code
    response.text = content
    response.json.return_value = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return response


@pytest.fixture
def mock_session():
    """A session whose ``post`` returns a canned chat completion."""
    session = MagicMock()
    session.post.return_value = chat_response("Likely cause: login returns 200 for bad credentials.")
    return session


@pytest.fixture
def chat_reply():
    """Factory for fake chat-completion responses."""
    return chat_response
