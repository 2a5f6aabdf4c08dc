"""Tests for central configuration settings."""

import os
from pathlib import Path
from unittest.mock import patch

import pydantic
import pytest

from mkwebuser.config.settings import (
    AppSettings,
    HostSettings,
    ProvisioningSettings,
    get_settings,
)


class TestProvisioningSettings:
    def test_defaults_applied(self):
        settings = ProvisioningSettings()
        assert settings.default_quota_mib == 1024
        assert settings.default_base == "/home"
        assert settings.default_mount_base == "/srv/mkwebuser"
        assert settings.resume is False
        assert settings.timeout_seconds is None
        assert settings.rollback_attempts == 5

    def test_env_override(self):
        with patch.dict(os.environ, {
            "MKWEBUSER_DEFAULT_QUOTA_MIB": "2048",
            "MKWEBUSER_RESUME": "true",
            "MKWEBUSER_TIMEOUT_SECONDS": "90",
            "MKWEBUSER_RESERVED_USERNAMES": '["deploy", "git"]',
        }, clear=False):
            settings = ProvisioningSettings()
            assert settings.default_quota_mib == 2048
            assert settings.resume is True
            assert settings.timeout_seconds == 90.0
            assert settings.reserved_usernames == ["deploy", "git"]

    def test_rollback_attempts_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError, match="rollback_attempts"):
            ProvisioningSettings(rollback_attempts=0)


class TestHostSettings:
    def test_defaults(self):
        settings = HostSettings()
        assert settings.sftp_group == "sftponly"
        assert settings.lock_dir == "/run/mkwebuser"
        assert settings.state_path == Path("/var/lib/mkwebuser/state.json")

    def test_no_state_file(self):
        settings = HostSettings(state_file=None)
        assert settings.state_path is None

    def test_env_override(self):
        with patch.dict(os.environ, {
            "MKWEBUSER_SFTP_GROUP": "webusers",
            "MKWEBUSER_COMMAND_TIMEOUT": "30",
        }, clear=False):
            settings = HostSettings()
            assert settings.sftp_group == "webusers"
            assert settings.command_timeout == 30


class TestAppSettings:
    def test_nested_groups_created(self):
        settings = AppSettings()
        assert isinstance(settings.provisioning, ProvisioningSettings)
        assert isinstance(settings.host, HostSettings)

    def test_nested_groups_read_env(self):
        with patch.dict(os.environ, {"MKWEBUSER_QUOTA_MAX_MIB": "500"}, clear=False):
            settings = AppSettings()
            assert settings.provisioning.quota_max_mib == 500

    def test_explicit_groups_kept(self):
        host = HostSettings(lock_dir=None)
        settings = AppSettings(host=host)
        assert settings.host.lock_dir is None

    def test_log_format_validated(self):
        with patch.dict(os.environ, {"MKWEBUSER_LOG_FORMAT": "xml"}, clear=False):
            with pytest.raises(pydantic.ValidationError, match="log_format"):
                AppSettings()


class TestGetSettings:
    def test_returns_singleton(self):
        assert get_settings() is get_settings()

    def test_cache_clear(self):
        first = get_settings()
        get_settings.cache_clear()
        assert get_settings() is not first
