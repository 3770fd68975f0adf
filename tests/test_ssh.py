"""Tests for SSH connection configuration."""

import pytest

from fleetops.ssh import SSHConfig, SSHSession
from fleetops.types import EffectiveHostConfig


class TestSSHConfig:
    """Tests for SSHConfig."""

    def test_from_host(self):
        host = EffectiveHostConfig(
            name="web01", hostname="10.0.0.1", user="deploy", port=2222, identity_file="~/.ssh/web"
        )
        config = SSHConfig.from_host(host)

        assert config.hostname == "10.0.0.1"
        assert config.port == 2222
        assert config.username == "deploy"
        assert config.client_keys == ["~/.ssh/web"]

    def test_from_host_overrides(self):
        host = EffectiveHostConfig(name="web01", hostname="web01", user="deploy")
        config = SSHConfig.from_host(host, known_hosts=None, connect_timeout=5)

        assert config.client_keys is None
        assert config.known_hosts is None
        assert config.connect_timeout == 5

    def test_default_known_hosts_not_passed(self):
        options = SSHConfig(hostname="web01", username="deploy").to_asyncssh_options()

        assert options["host"] == "web01"
        assert options["port"] == 22
        assert options["username"] == "deploy"
        assert "known_hosts" not in options
        assert "password" not in options
        assert "client_keys" not in options

    def test_disabled_known_hosts(self):
        options = SSHConfig(hostname="web01", known_hosts=None).to_asyncssh_options()
        assert options["known_hosts"] is None

    def test_explicit_known_hosts_and_password(self):
        options = SSHConfig(
            hostname="web01", known_hosts="/etc/ssh/known_hosts", password="hunter2"
        ).to_asyncssh_options()
        assert options["known_hosts"] == "/etc/ssh/known_hosts"
        assert options["password"] == "hunter2"


@pytest.mark.asyncio
async def test_run_requires_open_session():
    session = SSHSession(SSHConfig(hostname="web01"))
    assert session.name == "web01"
    with pytest.raises(RuntimeError, match="not open"):
        await session.run("uptime")
