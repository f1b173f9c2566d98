"""Tests for echo.toml configuration."""

import pytest

from echonotes.config import (
    CONFIG_FILENAME,
    CONFIG_VERSION,
    DEFAULT_POLL_INTERVAL,
    EchoConfig,
    ProviderConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


class TestStorePath:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ECHO_STORE_PATH", str(tmp_path / "custom"))
        assert get_default_store_path() == (tmp_path / "custom").resolve()

    def test_home_default(self, monkeypatch, tmp_path):
        monkeypatch.delenv("ECHO_STORE_PATH", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_default_store_path() == tmp_path / ".echo-notes"


class TestLoadSave:
    def test_create_defaults_without_endpoint(self, monkeypatch, tmp_path):
        monkeypatch.delenv("ECHO_ENRICHMENT_URL", raising=False)
        config = load_or_create_config(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert config.enrichment.name == "none"
        assert config.poll_interval == DEFAULT_POLL_INTERVAL

    def test_endpoint_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ECHO_ENRICHMENT_URL", "https://transcribe.example.com")
        config = load_or_create_config(tmp_path)
        assert config.enrichment == ProviderConfig(
            "http", {"api_url": "https://transcribe.example.com"}
        )

    def test_round_trip(self, tmp_path):
        config = EchoConfig(
            path=tmp_path,
            locale="pt",
            poll_interval=0.5,
            enrichment=ProviderConfig("http", {"api_url": "http://localhost:3000", "timeout": 30.0}),
        )
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.locale == "pt"
        assert loaded.poll_interval == 0.5
        assert loaded.enrichment.name == "http"
        assert loaded.enrichment.params == {"api_url": "http://localhost:3000", "timeout": 30.0}
        assert loaded.created == config.created

    def test_api_key_is_not_written(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ECHO_ENRICHMENT_URL", "https://transcribe.example.com")
        monkeypatch.setenv("ECHO_API_KEY", "secret-key")
        load_or_create_config(tmp_path)
        assert "secret-key" not in (tmp_path / CONFIG_FILENAME).read_text()

    def test_existing_config_is_kept(self, tmp_path):
        save_config(EchoConfig(path=tmp_path, locale="es"))
        assert load_or_create_config(tmp_path).locale == "es"

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(f"[store]\nversion = {CONFIG_VERSION + 1}\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    @pytest.mark.parametrize("value", ["0", "-1", '"fast"'])
    def test_invalid_poll_interval(self, tmp_path, value):
        (tmp_path / CONFIG_FILENAME).write_text(f"[store]\npoll_interval = {value}\n")
        with pytest.raises(ValueError):
            load_config(tmp_path)
