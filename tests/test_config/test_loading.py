from pathlib import Path

import quill.config as config_module
from quill.config import Config


def test_load_prefers_local_quill_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("streaming:\n  flush_chars: 10\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "quill.yaml"
    local_cfg.write_text(
        (
            "streaming:\n"
            "  flush_chars: 80\n"
            "routing:\n"
            "  models:\n"
            "    general: groq/llama-3.3-70b-versatile\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.streaming.flush_chars == 80
    assert cfg.routing.models == {"general": "groq/llama-3.3-70b-versatile"}


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "provider:\n"
            "  base_url: https://llm.example.com/v1\n"
            "  timeout: 30\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.provider.base_url == "https://llm.example.com/v1"
    assert cfg.provider.timeout == 30.0


def test_missing_config_file_yields_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.streaming.flush_chars == 50
    assert cfg.streaming.flush_interval == 1.0
    assert cfg.search.auto_search is True
    assert "generate_image" in cfg.tools.enabled
    assert [e.prefix for e in cfg.provider.endpoints] == ["groq/", "moonshotai/"]


def test_env_var_overrides_yaml_value(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    local_cfg = tmp_path / "quill.yaml"
    local_cfg.write_text("streaming:\n  flush_chars: 80\n", encoding="utf-8")
    monkeypatch.setenv("QUILL_STREAMING__FLUSH_CHARS", "25")

    cfg = Config.load()

    assert cfg.streaming.flush_chars == 25


def test_search_key_from_dotenv(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    dotenv_file = tmp_path / ".env"
    dotenv_file.write_text("QUILL_TOOLS__WEB_SEARCH__API_KEY=dotenv-search-key\n", encoding="utf-8")

    cfg = Config()

    assert cfg.tools.web_search.api_key == "dotenv-search-key"


def test_save_round_trips_through_yaml(tmp_path: Path):
    config_path = tmp_path / "saved-config.yaml"
    cfg = Config()
    cfg.streaming.pause_notice = "Paused."
    cfg.routing.cross_provider_default = "openai/gpt-4o"

    cfg.save(config_path)

    reloaded = Config.from_yaml(config_path)
    assert reloaded.streaming.pause_notice == "Paused."
    assert reloaded.routing.cross_provider_default == "openai/gpt-4o"
