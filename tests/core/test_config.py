"""Tests for shared configuration classes."""

from __future__ import annotations

from clinicsync.core.config import ServerConfig, SyncSettings


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_trailing_slash_removed(self) -> None:
        config = ServerConfig(server_url="http://localhost:8000/", token="t")
        assert config.server_url == "http://localhost:8000"

    def test_ws_url_http(self) -> None:
        config = ServerConfig(server_url="http://localhost:8000", token="t")
        assert config.ws_url("patients") == "ws://localhost:8000/ws/collections/patients?token=t"
        assert not config.is_secure

    def test_ws_url_https(self) -> None:
        config = ServerConfig(server_url="https://records.example.com", token="t")
        assert config.ws_url("vitals").startswith("wss://records.example.com/")
        assert config.is_secure

    def test_ws_url_quotes_token(self) -> None:
        config = ServerConfig(server_url="http://h", token="a b/c")
        assert config.ws_url("patients").endswith("?token=a%20b%2Fc")

    def test_defaults(self) -> None:
        config = ServerConfig(server_url="http://h", token="t")
        assert config.device_id == "local"
        assert config.timeout == 30.0
        assert config.verify_ssl


class TestSyncSettings:
    """Tests for SyncSettings."""

    def test_defaults(self) -> None:
        settings = SyncSettings()
        assert settings.sync_interval == 30.0
        assert settings.undo_window == 7.0
        assert settings.remote_write_timeout == 5.0
        assert settings.reconnect_delay == 5.0
