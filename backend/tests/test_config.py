"""Tests for relay configuration loading.

Covers:
* defaults when no files exist
* settings + secrets merge from sibling YAML files
* storage path resolution relative to the settings file
* delivery validation
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from relay.config import (
    AppSettings,
    DeliverySettings,
    get_config,
    load_config,
    reset_config,
    set_config,
)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "relay.settings.yaml")
        assert cfg.server.port == 8000
        assert cfg.delivery.push_timeout_seconds == 5.0
        assert cfg.delivery.dedupe_channel_recipients is False
        assert cfg.auth.require_token is False
        assert cfg.auth.identity_claim == "id"
        assert cfg.secrets.jwt.algorithm == "HS256"

    def test_default_db_path_is_next_to_settings(self, tmp_path):
        cfg = load_config(tmp_path / "relay.settings.yaml")
        assert Path(cfg.storage.db_path) == tmp_path.resolve() / "relay_messages.duckdb"

    def test_empty_settings_file(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", "")
        assert load_config(settings).server.host == "0.0.0.0"


class TestLoadFromFiles:
    def test_settings_values_are_applied(self, tmp_path):
        settings = _write(
            tmp_path / "relay.settings.yaml",
            """
server:
  port: 9100
  allowed_origins: ["http://localhost:3000"]
logging:
  level: debug
delivery:
  push_timeout_seconds: 1.5
  dedupe_channel_recipients: true
auth:
  require_token: true
  identity_claim: sub
""",
        )
        cfg = load_config(settings)
        assert cfg.server.port == 9100
        assert cfg.server.allowed_origins == ["http://localhost:3000"]
        assert cfg.logging.level == "debug"
        assert cfg.delivery.push_timeout_seconds == 1.5
        assert cfg.delivery.dedupe_channel_recipients is True
        assert cfg.auth.require_token is True
        assert cfg.auth.identity_claim == "sub"

    def test_secrets_are_read_from_sibling_file(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", "server:\n  port: 8001\n")
        _write(
            tmp_path / "relay.secrets.yaml",
            "jwt:\n  secret_key: from-secrets\n  algorithm: HS512\n",
        )
        cfg = load_config(settings)
        assert cfg.secrets.jwt.secret_key == "from-secrets"
        assert cfg.secrets.jwt.algorithm == "HS512"

    def test_secrets_key_in_settings_is_overridden(self, tmp_path):
        settings = _write(
            tmp_path / "relay.settings.yaml",
            "secrets:\n  jwt:\n    secret_key: leaked\n",
        )
        cfg = load_config(settings)
        assert cfg.secrets.jwt.secret_key != "leaked"

    def test_relative_db_path_resolves_against_settings_dir(self, tmp_path):
        settings = _write(
            tmp_path / "relay.settings.yaml", "storage:\n  db_path: data/messages.duckdb\n"
        )
        cfg = load_config(settings)
        assert Path(cfg.storage.db_path) == tmp_path.resolve() / "data" / "messages.duckdb"

    def test_absolute_db_path_is_kept(self, tmp_path):
        target = tmp_path / "elsewhere.duckdb"
        settings = _write(tmp_path / "relay.settings.yaml", f"storage:\n  db_path: {target}\n")
        assert load_config(settings).storage.db_path == str(target)

    def test_memory_db_is_kept(self, tmp_path):
        settings = _write(tmp_path / "relay.settings.yaml", 'storage:\n  db_path: ":memory:"\n')
        assert load_config(settings).storage.db_path == ":memory:"


class TestValidation:
    @pytest.mark.parametrize("timeout", [0, -1.0])
    def test_push_timeout_must_be_positive(self, timeout):
        with pytest.raises(ValidationError):
            DeliverySettings(push_timeout_seconds=timeout)

    def test_invalid_timeout_in_file_is_rejected(self, tmp_path):
        settings = _write(
            tmp_path / "relay.settings.yaml", "delivery:\n  push_timeout_seconds: 0\n"
        )
        with pytest.raises(ValidationError):
            load_config(settings)


class TestGlobalConfig:
    def test_set_get_reset(self):
        custom = AppSettings()
        custom.server.port = 1234
        set_config(custom)
        try:
            assert get_config() is custom
        finally:
            reset_config()
