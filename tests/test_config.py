from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from tandem_core.config import TandemConfig, _deep_merge
from tandem_core.errors import ConfigError


class TestConfig:
    def test_default_config(self):
        config = TandemConfig()
        assert config.orchestration.entry_agent == "orchestrator"
        assert config.orchestration.max_delegation_depth == 8
        assert config.sessions.main_key == "main"
        assert config.sessions.reset_mode == "daily"
        assert config.providers.default_provider == "codex"
        assert config.paths.home_dir == Path("~/.tandem").expanduser()

    def test_from_toml_missing_file(self):
        config = TandemConfig.from_toml("/nonexistent/path/tandem.toml")
        assert config.orchestration.entry_agent == "orchestrator"

    def test_from_toml(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write('''
[project]
name = "test-project"

[paths]
home = "/tmp/tandem-test"

[orchestration]
entry_agent = "lead"
max_delegation_depth = 3

[sessions]
reset_mode = "idle"
idle_minutes = 15
compaction_keep_recent = 5

[providers]
default_provider = "claude-code"
default_timeout_seconds = 30

[providers.openai]
timeout_seconds = 45
env = { OPENAI_MODEL = "gpt-4.1", OPENAI_REQUEST_TIMEOUT_MS = 9000 }
''')
            f.flush()
            config = TandemConfig.from_toml(f.name)
        Path(f.name).unlink()

        assert config.project_name == "test-project"
        assert config.paths.home_dir == Path("/tmp/tandem-test")
        assert config.orchestration.entry_agent == "lead"
        assert config.orchestration.max_delegation_depth == 3
        assert config.sessions.reset_mode == "idle"
        assert config.sessions.idle_minutes == 15
        assert config.sessions.compaction_keep_recent == 5
        assert config.providers.default_provider == "claude-code"

        openai = config.providers.for_provider("openai")
        assert openai.env == {"OPENAI_MODEL": "gpt-4.1", "OPENAI_REQUEST_TIMEOUT_MS": "9000"}
        assert config.providers.timeout_for("openai") == 45
        assert config.providers.timeout_for("codex") == 30

    def test_unknown_keys_are_ignored(self):
        config = TandemConfig._from_raw({"sessions": {"colour": "blue", "main_key": "home"}})
        assert config.sessions.main_key == "home"

    def test_invalid_reset_mode(self):
        with pytest.raises(ConfigError, match="reset_mode"):
            TandemConfig._from_raw({"sessions": {"reset_mode": "weekly"}})

    def test_invalid_delegation_depth(self):
        with pytest.raises(ConfigError, match="max_delegation_depth"):
            TandemConfig._from_raw({"orchestration": {"max_delegation_depth": 0}})

    def test_provider_env_must_be_table(self):
        with pytest.raises(ConfigError, match="providers.codex.env"):
            TandemConfig._from_raw({"providers": {"codex": {"env": "CODEX_CMD=x"}}})

    def test_load_layers_project_over_global(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        (home / ".tandem").mkdir(parents=True)
        (home / ".tandem" / "config.toml").write_text(
            '[orchestration]\nentry_agent = "boss"\nmax_delegation_depth = 4\n'
        )
        project = tmp_path / "project"
        project.mkdir()
        (project / "tandem.toml").write_text("[orchestration]\nmax_delegation_depth = 2\n")
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))

        config = TandemConfig.load(project)
        assert config.orchestration.entry_agent == "boss"
        assert config.orchestration.max_delegation_depth == 2


class TestDeepMerge:
    def test_sections_merge_one_level(self):
        merged = _deep_merge(
            {"sessions": {"main_key": "main", "reset_mode": "daily"}},
            {"sessions": {"reset_mode": "never"}},
        )
        assert merged == {"sessions": {"main_key": "main", "reset_mode": "never"}}

    def test_scalars_override(self):
        assert _deep_merge({"a": 1}, {"a": 2, "b": 3}) == {"a": 2, "b": 3}
