"""Tests for configuration loading and validation."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.settings import Settings, is_valid_connect_code
from src.core.errors import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep user-config.json / .env lookups inside a temp directory."""
    monkeypatch.chdir(tmp_path)
    for name in ("SLIPPI_CONNECT_CODE", "SLIPPI_POLL_INTERVAL", "SLIPPI_RECORD_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestDefaults:
    def test_detection_timing(self):
        s = Settings()
        assert s.poll_interval == 5.0
        assert s.unchanged_poll_threshold == 3
        assert s.session_ceiling == 1800
        assert s.recent_window == 300
        assert s.settle_delay == 5.0

    def test_live_stream_defaults(self):
        s = Settings()
        assert s.use_live_stream is True
        assert s.dolphin_host == "127.0.0.1"
        assert s.dolphin_port == 51441

    def test_record_backend_defaults_to_ledger(self):
        s = Settings()
        assert s.record_backend == "ledger"
        assert s.ledger_path == Path("data") / "ratings.jsonl"

    def test_replay_dir_under_home(self):
        assert Settings().replay_dir == Path.home() / "Documents" / "Slippi"


class TestConnectCode:
    def test_normalized(self):
        assert Settings(connect_code=" abcd#123 ").connect_code == "ABCD#123"

    def test_blank_is_none(self):
        assert Settings(connect_code="  ").connect_code is None

    def test_invalid_rejected_on_validation(self):
        s = Settings(connect_code="not-a-code")
        assert s.connect_code == "NOT-A-CODE"
        with pytest.raises(ConfigurationError, match="Invalid connect code"):
            s.validate_required()

    def test_bad_code_in_user_config_still_loads(self, isolated_cwd):
        (isolated_cwd / "user-config.json").write_text(json.dumps({"connect_code": "OLD#1"}))
        s = Settings()
        assert s.connect_code == "OLD#1"
        with pytest.raises(ConfigurationError):
            s.validate_required()

    @pytest.mark.parametrize("code", ["ABCD#123", "abcd#1", "TEST99#42"])
    def test_valid_codes(self, code):
        assert is_valid_connect_code(code)

    @pytest.mark.parametrize("code", ["AB#1", "ABCD123", "ABCD#", "ABCD#1234"])
    def test_invalid_codes(self, code):
        assert not is_valid_connect_code(code)


class TestSources:
    def test_extension_normalized(self):
        assert Settings(artifact_extension="SLP").artifact_extension == ".slp"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SLIPPI_POLL_INTERVAL", "1.5")
        assert Settings().poll_interval == 1.5

    def test_user_config_file(self, isolated_cwd):
        (isolated_cwd / "user-config.json").write_text(
            json.dumps({"connect_code": "test#7", "sheet_name": "Ranked"})
        )
        s = Settings()
        assert s.connect_code == "TEST#7"
        assert s.sheet_name == "Ranked"

    def test_env_beats_user_config(self, isolated_cwd, monkeypatch):
        (isolated_cwd / "user-config.json").write_text(json.dumps({"connect_code": "FILE#1"}))
        monkeypatch.setenv("SLIPPI_CONNECT_CODE", "ENVV#2")
        assert Settings().connect_code == "ENVV#2"

    def test_frozen(self):
        s = Settings()
        with pytest.raises(ValidationError):
            s.poll_interval = 1.0


class TestValidateRequired:
    def test_missing_connect_code(self):
        with pytest.raises(ConfigurationError, match="Connect code"):
            Settings().validate_required()

    def test_ledger_needs_only_code(self):
        Settings(connect_code="ABCD#123").validate_required()

    def test_sheets_needs_spreadsheet_id(self):
        s = Settings(connect_code="ABCD#123", record_backend="sheets", sheets_access_token="t")
        with pytest.raises(ConfigurationError, match="Spreadsheet ID"):
            s.validate_required()

    def test_sheets_needs_token(self):
        s = Settings(connect_code="ABCD#123", record_backend="sheets", spreadsheet_id="abc")
        with pytest.raises(ConfigurationError, match="access token"):
            s.validate_required()
