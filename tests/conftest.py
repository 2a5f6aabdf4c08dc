"""Shared pytest fixtures for mkwebuser tests."""
import logging
import os
from unittest.mock import patch

import pytest

from mkwebuser.config.settings import (
    AppSettings,
    HostSettings,
    ProvisioningSettings,
    get_settings,
)
from mkwebuser.gateway import SimulatedHost
from mkwebuser.provisioning import (
    ProvisioningEngine,
    ProvisioningStateManager,
    ProvisionRequest,
    UsernameLocks,
)

USER_BASE = "/srv/users"
MOUNT_BASE = "/srv/mnt"


# ---------------------------------------------------------------------------
# Deterministic test environment: no MKWEBUSER_* variable from the developer's
# shell may leak into settings built by the tests.
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_env():
    env = {k: v for k, v in os.environ.items() if not k.startswith("MKWEBUSER_")}
    with patch.dict(os.environ, env, clear=True):
        get_settings.cache_clear()
        yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_logging():
    """configure_logging binds handlers to the streams of the current test."""
    yield
    logging.getLogger("mkwebuser").handlers = []


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def settings():
    """Settings with no lock files, no journal file and instant retries."""
    return AppSettings(
        provisioning=ProvisioningSettings(
            rollback_attempts=5,
            rollback_backoff_seconds=0,
            rollback_backoff_max_seconds=0,
        ),
        host=HostSettings(
            lock_dir=None,
            state_file=None,
            sshd_reload_command="",
        ),
    )


# =============================================================================
# Host and engine
# =============================================================================

@pytest.fixture
def host():
    """Simulated host with both base directories in place."""
    sim = SimulatedHost()
    sim.makedirs(USER_BASE)
    sim.makedirs(MOUNT_BASE)
    return sim


@pytest.fixture
def username_locks():
    return UsernameLocks()


@pytest.fixture
def engine(host, settings, username_locks):
    return ProvisioningEngine(
        host,
        settings,
        state_manager=ProvisioningStateManager(),
        username_locks=username_locks,
    )


@pytest.fixture
def request_alice():
    return ProvisionRequest(
        username="alice",
        quota=500,
        user_base=USER_BASE,
        mount_base=MOUNT_BASE,
    )


@pytest.fixture
def make_request():
    """Factory for requests under the default base directories."""
    def _make(username="alice", quota=500, user_base=USER_BASE, mount_base=MOUNT_BASE):
        return ProvisionRequest(
            username=username,
            quota=quota,
            user_base=user_base,
            mount_base=mount_base,
        )
    return _make


@pytest.fixture
def assert_pristine():
    """Checker: the host holds nothing but the base directories."""
    def _check(host):
        assert host.accounts == {}
        assert host.loop_devices == {}
        assert host.mounts == {}
        assert host.chroots == {}
        assert host.restricted_logins == {}
        assert set(host.paths) == {"/", "/srv", USER_BASE, MOUNT_BASE}
    return _check
