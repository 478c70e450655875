from pathlib import Path

import pytest

import script_agent.config as config_module
from script_agent.config import Config


@pytest.fixture
def no_home_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home_cfg = tmp_path / "home" / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)
    return home_cfg


def test_defaults_without_any_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_home_config: Path):
    monkeypatch.chdir(tmp_path)

    cfg = Config.load()

    assert cfg.transport.mode == "auto"
    assert cfg.transport.connect_timeout == 30.0
    assert cfg.transport.read_timeout == 30.0
    assert cfg.transport.exchange_timeout == 600.0
    assert cfg.transport.poll_interval == 0.1
    assert cfg.agent.max_turns == 20
    assert cfg.history.enabled is True


def test_load_prefers_local_config_yaml(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_home_config: Path):
    monkeypatch.chdir(tmp_path)
    no_home_config.parent.mkdir(parents=True)
    no_home_config.write_text("model:\n  model: from-home\n", encoding="utf-8")
    (tmp_path / "config.yaml").write_text(
        (
            "model:\n"
            "  model: from-local\n"
            "transport:\n"
            "  mode: direct\n"
            "  allowed_tools:\n"
            "    - Read\n"
            "agent:\n"
            "  max_turns: 4\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "from-local"
    assert cfg.transport.mode == "direct"
    assert cfg.transport.allowed_tools == ["Read"]
    assert cfg.agent.max_turns == 4


def test_home_config_is_used_without_local_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_home_config: Path):
    monkeypatch.chdir(tmp_path)
    no_home_config.parent.mkdir(parents=True)
    no_home_config.write_text("executor:\n  timeout: 5\n", encoding="utf-8")

    assert Config.load().executor.timeout == 5


def test_environment_fills_unset_values(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_home_config: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SCRIPT_AGENT_AGENT__MAX_TURNS", "7")
    monkeypatch.setenv("SCRIPT_AGENT_TRANSPORT__MODE", "subprocess")

    cfg = Config.load()

    assert cfg.agent.max_turns == 7
    assert cfg.transport.mode == "subprocess"


def test_invalid_mode_is_rejected(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("transport:\n  mode: telepathy\n", encoding="utf-8")

    with pytest.raises(ValueError):
        Config.from_yaml(path)


def test_save_writes_loadable_yaml(tmp_path: Path):
    cfg = Config()
    cfg.model.model = "claude-saved"
    cfg.agent.project_dir = str(tmp_path)
    path = tmp_path / "nested" / "config.yaml"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.model.model == "claude-saved"
    assert loaded.agent.project_dir == str(tmp_path)


def test_resolved_history_dir_expands_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg = Config()
    cfg.history.base_dir = "~/agent-history"

    assert cfg.resolved_history_dir() == (tmp_path / "agent-history").resolve()


def test_get_config_returns_what_was_set():
    cfg = Config()
    cfg.agent.max_turns = 3
    config_module.set_config(cfg)
    try:
        assert config_module.get_config() is cfg
    finally:
        config_module.set_config(Config())
