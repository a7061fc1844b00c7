"""Tests for configuration loading and the maintenance CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import structlog
import yaml

from chimp import main as chimp_main
from chimp.config import ChimpConfig, get_chimp_home, load_config, save_default_config


class TestConfig:
    def test_defaults(self):
        config = ChimpConfig()
        assert config.bot_name == "ChimpGPT"
        assert config.conversation.max_length == 12
        assert config.conversation.optimize_threshold == 4
        assert config.persistence.save_interval_seconds == 300
        assert config.persistence.max_age_days == 7
        assert config.persistence.max_file_size_mb == 10
        assert config.references.max_depth == 5
        assert config.references.max_context == 5
        assert config.blended.enabled is False
        assert config.blended.max_messages_per_user == 5

    def test_home_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CHIMP_HOME", str(tmp_path))
        assert get_chimp_home() == tmp_path
        assert ChimpConfig().persistence.get_path() == tmp_path / "data" / "conversations.json"

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")
        assert config == ChimpConfig()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "bot_personality": "Be brief.",
            "conversation": {"max_length": 20},
            "blended": {"enabled": True},
        }), encoding="utf-8")
        config = load_config(path)
        assert config.bot_personality == "Be brief."
        assert config.conversation.max_length == 20
        assert config.blended.enabled is True
        assert config.references.max_depth == 5

    def test_rejects_tiny_conversation_length(self):
        with pytest.raises(ValueError):
            ChimpConfig(conversation={"max_length": 1})

    def test_save_default_config_round_trips(self, tmp_path):
        path = save_default_config(tmp_path / "nested" / "config.yaml")
        assert path.exists()
        assert load_config(path) == ChimpConfig()


class TestCLI:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        # Keep stdout clean for the JSON status output
        monkeypatch.setattr(chimp_main, "setup_logging", lambda level="info": None)
        structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(50))
        yield
        structlog.reset_defaults()

    @pytest.fixture
    def config_path(self, tmp_path, monkeypatch) -> Path:
        monkeypatch.setenv("CHIMP_HOME", str(tmp_path / "home"))
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "persistence": {
                "path": str(tmp_path / "conversations.json"),
                "save_interval_seconds": 0,
            },
        }), encoding="utf-8")
        return path

    def test_init(self, tmp_path, capsys):
        target = tmp_path / "fresh.yaml"
        assert chimp_main.main(["--init", "--config", str(target)]) == 0
        assert target.exists()
        assert str(target) in capsys.readouterr().out

    def test_status(self, config_path, capsys):
        assert chimp_main.main(["--status", "--config", str(config_path)]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["phase"] == "ready"
        assert status["active_conversations"] == 0

    def test_clear_missing(self, config_path, capsys):
        assert chimp_main.main(["--clear", "nobody", "--config", str(config_path)]) == 1
        assert "No conversation" in capsys.readouterr().out

    def test_prune_and_clear_all(self, config_path, capsys):
        assert chimp_main.main(["--prune", "--config", str(config_path)]) == 0
        assert "Pruned 0" in capsys.readouterr().out
        assert chimp_main.main(["--clear-all", "--config", str(config_path)]) == 0
