"""Configuration for the analyzer, loaded once per run.

Values come from (lowest to highest precedence) built-in defaults, the TOML
file at ``~/.testimpact/config.toml`` and environment variables. The CLI may
override individual fields afterwards with :func:`dataclasses.replace`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import toml
except ImportError:
    toml = None  # type: ignore

BASE_DIR = Path(os.environ.get("TESTIMPACT_HOME", str(Path.home() / ".testimpact"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

DEFAULT_REMOTE_MODEL = "meta-llama/llama-3.3-8b-instruct:free"
DEFAULT_REMOTE_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_SERVER_URL = "https://github.com"

BODY_MAX_CHARS = 60_000
LOG_MAX_CHARS = 120_000
PROMPT_MAX_CHARS = 16_000
MAX_SELECTED_CLASSES = 200


class ConfigError(Exception):
    """Raised when a required identifier is missing; aborts before any work."""


@dataclass(frozen=True)
class AnalyzerConfig:
    # Change identity
    repo: str = ""
    change_id: str = ""
    base_sha: str = ""
    head_sha: str = ""
    server_url: str = DEFAULT_SERVER_URL
    project_root: Path = field(default_factory=Path.cwd)

    # Remote provider (OpenRouter-style)
    remote_api_key: str = ""
    remote_model: str = DEFAULT_REMOTE_MODEL
    remote_endpoint: str = DEFAULT_REMOTE_ENDPOINT

    # Local OpenAI-compatible provider
    local_provider: str = ""
    local_base_url: str = ""
    local_model: str = ""
    local_api_key: str = ""

    max_tokens: int = 800
    temperature: float = 0.2
    connect_timeout: float = 20.0
    request_timeout: float = 120.0

    # Caps
    max_highlights: int = 200
    body_max_chars: int = BODY_MAX_CHARS
    log_max_chars: int = LOG_MAX_CHARS
    prompt_max_chars: int = PROMPT_MAX_CHARS

    # Behaviour flags
    fail_on_test_failure: bool = False
    selector_enabled: bool = False
    selector_max_files: int = 60
    selector_max_diff_chars: int = 16_000
    audit_dir: Path = Path(".testimpact") / "selector"

    @property
    def local_configured(self) -> bool:
        """True when an OpenAI-compatible endpoint has been set up."""
        return (
            self.local_provider.lower() == "openai"
            and bool(self.local_base_url.strip())
            and bool(self.local_model.strip())
        )

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_api_key.strip())

    @property
    def change_url(self) -> str:
        if not self.repo or not self.change_id:
            return "(local run)"
        return f"{self.server_url.rstrip('/')}/{self.repo}/pull/{self.change_id}"

    def require_pr_identifiers(self) -> None:
        """Validate the identifiers needed to post a review comment."""
        if not self.repo.strip():
            raise ConfigError("Missing required setting: REPO")
        if not self.change_id.strip():
            raise ConfigError("Missing required setting: PULL_NUMBER")

    def with_overrides(self, **overrides: Any) -> "AnalyzerConfig":
        """Return a copy with the non-None overrides applied."""
        cleaned = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **cleaned) if cleaned else self

    @classmethod
    def load(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_file: Optional[Path] = None,
    ) -> "AnalyzerConfig":
        """Build the configuration from the TOML file and the environment."""
        env = os.environ if environ is None else environ
        file_values = load_file_config(config_file)
        values: Dict[str, Any] = {}
        values.update(file_values)
        values.update(_from_environment(env, defaults=values))
        return cls(**values)


def _getenv(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def parse_int(value: Any, default: int) -> int:
    """Lenient integer parsing: anything invalid yields ``default``."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _from_environment(env: Mapping[str, str], defaults: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}

    string_keys = {
        "REPO": "repo",
        "PULL_NUMBER": "change_id",
        "BASE_SHA": "base_sha",
        "HEAD_SHA": "head_sha",
        "SERVER_URL": "server_url",
        "OPENROUTER_API_KEY": "remote_api_key",
        "OPENROUTER_MODEL": "remote_model",
        "LLM_PROVIDER": "local_provider",
        "LLM_BASE_URL": "local_base_url",
        "LLM_MODEL": "local_model",
        "LLM_API_KEY": "local_api_key",
    }
    for env_key, attr in string_keys.items():
        value = _getenv(env, env_key)
        if value is not None:
            out[attr] = value

    int_keys = {
        "LLM_MAX_TOKENS": ("max_tokens", 800),
        "ANALYZER_MAX_HIGHLIGHTS": ("max_highlights", 200),
        "LLM_SELECTOR_MAX_FILES": ("selector_max_files", 60),
        "LLM_SELECTOR_MAX_DIFF_CHARS": ("selector_max_diff_chars", 16_000),
    }
    for env_key, (attr, fallback) in int_keys.items():
        value = _getenv(env, env_key)
        if value is not None:
            out[attr] = parse_int(value, defaults.get(attr, fallback))

    bool_keys = {
        "FAIL_ON_TEST_FAILURE": "fail_on_test_failure",
        "LLM_TEST_SELECTOR": "selector_enabled",
    }
    for env_key, attr in bool_keys.items():
        value = _getenv(env, env_key)
        if value is not None:
            out[attr] = parse_bool(value)

    return out


def config_path() -> Path:
    return Path(os.environ.get("TESTIMPACT_CONFIG", str(CONFIG_FILE)))


def load_file_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Read ``[llm]``, ``[analyzer]`` and ``[selector]`` sections from TOML.

    Returns an empty dict when the file is missing, unreadable, or the
    ``toml`` package is not installed.
    """
    path = config_file or config_path()
    if toml is None or not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            raw = toml.load(f)
    except (OSError, toml.TomlDecodeError):
        return {}

    out: Dict[str, Any] = {}
    llm = raw.get("llm", {})
    remote = llm.get("remote", {})
    local = llm.get("local", {})
    _copy(remote, out, {"api_key": "remote_api_key", "model": "remote_model", "endpoint": "remote_endpoint"})
    _copy(local, out, {
        "provider": "local_provider",
        "base_url": "local_base_url",
        "model": "local_model",
        "api_key": "local_api_key",
    })
    if "max_tokens" in llm:
        out["max_tokens"] = parse_int(llm["max_tokens"], 800)
    if "temperature" in llm:
        out["temperature"] = float(llm["temperature"])

    analyzer = raw.get("analyzer", {})
    for key in ("max_highlights", "body_max_chars", "log_max_chars", "prompt_max_chars"):
        if key in analyzer:
            out[key] = parse_int(analyzer[key], getattr(AnalyzerConfig, key))
    if "fail_on_test_failure" in analyzer:
        out["fail_on_test_failure"] = parse_bool(analyzer["fail_on_test_failure"])
    if "server_url" in analyzer:
        out["server_url"] = str(analyzer["server_url"])

    selector = raw.get("selector", {})
    if "enabled" in selector:
        out["selector_enabled"] = parse_bool(selector["enabled"])
    for key, attr in (("max_files", "selector_max_files"), ("max_diff_chars", "selector_max_diff_chars")):
        if key in selector:
            out[attr] = parse_int(selector[key], getattr(AnalyzerConfig, attr))
    if "audit_dir" in selector:
        out["audit_dir"] = Path(selector["audit_dir"])

    return out


def _copy(section: Mapping[str, Any], out: Dict[str, Any], mapping: Mapping[str, str]) -> None:
    for key, attr in mapping.items():
        value = section.get(key)
        if value:
            out[attr] = str(value)


def mask_secret(value: str) -> str:
    """Mask an API key for display."""
    if not value:
        return "(not set)"
    return value[:4] + "•" * min(max(len(value) - 4, 0), 16)
