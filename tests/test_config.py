"""Tests for configuration loading and precedence."""

from pathlib import Path

import pytest

from testimpact_cli.config import AnalyzerConfig, ConfigError, load_file_config, mask_secret, parse_int


CONFIG_TOML = """
[llm]
max_tokens = 600
temperature = 0.1

[llm.remote]
api_key = "sk-or-file"
model = "file/model"

[llm.local]
provider = "openai"
base_url = "http://localhost:11434/v1"
model = "qwen2.5-coder:7b"

[analyzer]
max_highlights = 50
fail_on_test_failure = true

[selector]
enabled = true
max_files = 10
"""


@pytest.fixture
def config_file(temp_dir) -> Path:
    path = temp_dir / "config.toml"
    path.write_text(CONFIG_TOML)
    return path


class TestLoad:
    def test_defaults(self):
        config = AnalyzerConfig.load(environ={})

        assert config.max_tokens == 800
        assert config.max_highlights == 200
        assert config.body_max_chars == 60_000
        assert config.selector_enabled is False
        assert config.remote_model == "meta-llama/llama-3.3-8b-instruct:free"
        assert not config.local_configured
        assert not config.remote_configured

    def test_environment(self):
        config = AnalyzerConfig.load(environ={
            "REPO": "acme/shop",
            "PULL_NUMBER": "42",
            "OPENROUTER_API_KEY": "sk-or-env",
            "LLM_MAX_TOKENS": "not-a-number",
            "ANALYZER_MAX_HIGHLIGHTS": "25",
            "FAIL_ON_TEST_FAILURE": "true",
            "LLM_TEST_SELECTOR": "1",
        })

        assert config.change_url == "https://github.com/acme/shop/pull/42"
        assert config.remote_configured
        assert config.max_tokens == 800
        assert config.max_highlights == 25
        assert config.fail_on_test_failure is True
        assert config.selector_enabled is True

    def test_file_then_environment(self, config_file):
        config = AnalyzerConfig.load(environ={"OPENROUTER_API_KEY": "sk-or-env"}, config_file=config_file)

        assert config.remote_api_key == "sk-or-env"
        assert config.remote_model == "file/model"
        assert config.local_configured
        assert config.max_tokens == 600
        assert config.temperature == 0.1
        assert config.max_highlights == 50
        assert config.selector_max_files == 10

    def test_config_file_from_environment_variable(self, config_file, monkeypatch):
        monkeypatch.setenv("TESTIMPACT_CONFIG", str(config_file))
        assert load_file_config()["local_model"] == "qwen2.5-coder:7b"

    def test_missing_or_broken_file(self, temp_dir):
        broken = temp_dir / "broken.toml"
        broken.write_text("[llm\nmodel = ")

        assert load_file_config(temp_dir / "absent.toml") == {}
        assert load_file_config(broken) == {}

    def test_overrides_ignore_none(self):
        config = AnalyzerConfig(repo="a/b").with_overrides(repo=None, change_id="7")

        assert config.repo == "a/b"
        assert config.change_id == "7"


class TestValidation:
    def test_require_pr_identifiers(self):
        with pytest.raises(ConfigError, match="REPO"):
            AnalyzerConfig(change_id="1").require_pr_identifiers()
        with pytest.raises(ConfigError, match="PULL_NUMBER"):
            AnalyzerConfig(repo="a/b").require_pr_identifiers()
        AnalyzerConfig(repo="a/b", change_id="1").require_pr_identifiers()

    def test_helpers(self):
        assert parse_int(" 12 ", 3) == 12
        assert parse_int("x", 3) == 3
        assert mask_secret("") == "(not set)"
        assert mask_secret("sk-or-abcdef").startswith("sk-o")
        assert "abcdef" not in mask_secret("sk-or-abcdef")
