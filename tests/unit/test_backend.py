"""Unit tests for the warp-cli backend with a scripted command runner."""

import pytest

from egress_sidecar.client.backend import WarpCliBackend
from egress_sidecar.client.types import ClientMode, ClientOptions
from egress_sidecar.middleware.error_handler import (
    ClientConnectionError,
    ConfigurationError,
    InstallationError,
    ProxyModeError,
)
from egress_sidecar.system.commands import CommandResult


class ScriptedRunner:
    """Answers warp-cli subcommands from a table; everything else succeeds."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.commands = []
        self.scripts = []

    async def run(self, argv, timeout=None, redact=()):
        self.commands.append(list(argv))
        key = " ".join(argv[2:])
        returncode, stdout = self.responses.get(key, (0, "Success"))
        return CommandResult(tuple(argv), returncode, stdout)

    async def run_shell(self, script, timeout=None):
        self.scripts.append(script)
        returncode, stdout = self.responses.get("sh", (0, ""))
        return CommandResult(("sh", "-c", script), returncode, stdout)


@pytest.fixture
def installed(monkeypatch):
    monkeypatch.setattr(
        "egress_sidecar.client.backend.shutil.which", lambda binary: f"/usr/bin/{binary}"
    )


@pytest.fixture
def missing(monkeypatch):
    monkeypatch.setattr("egress_sidecar.client.backend.shutil.which", lambda binary: None)


class TestProbe:
    @pytest.mark.asyncio
    async def test_connected_in_proxy_mode(self, installed):
        runner = ScriptedRunner(
            {
                "status": (0, "Status update: Connected\nSuccess"),
                "settings": (0, "Merged configuration:\n(user set)\tMode: WarpProxy on port 40000\n"),
            }
        )
        probe = await WarpCliBackend(runner).probe()
        assert probe.installed is True
        assert probe.registered is True
        assert probe.connected is True
        assert probe.mode == ClientMode.PROXY
        assert probe.proxy_port == 40000

    @pytest.mark.asyncio
    async def test_tunnel_mode(self, installed):
        runner = ScriptedRunner(
            {
                "status": (0, "Status update: Disconnected\nReason: Manual Disconnection"),
                "settings": (0, "Mode: Warp\n"),
            }
        )
        probe = await WarpCliBackend(runner).probe()
        assert probe.connected is False
        assert probe.mode == ClientMode.TUNNEL

    @pytest.mark.asyncio
    async def test_registration_missing(self, installed):
        runner = ScriptedRunner(
            {"status": (0, "Status update: Unable\nReason: Registration Missing")}
        )
        probe = await WarpCliBackend(runner).probe()
        assert probe.registered is False
        assert probe.connected is False

    @pytest.mark.asyncio
    async def test_not_installed(self, missing):
        runner = ScriptedRunner()
        probe = await WarpCliBackend(runner).probe()
        assert probe.installed is False
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_daemon_down(self, installed):
        runner = ScriptedRunner({"status": (1, "")})
        with pytest.raises(ClientConnectionError, match="warp-svc"):
            await WarpCliBackend(runner).probe()


class TestCommands:
    @pytest.mark.asyncio
    async def test_always_accepts_tos(self, installed):
        runner = ScriptedRunner()
        await WarpCliBackend(runner).connect()
        assert runner.commands == [["warp-cli", "--accept-tos", "connect"]]

    @pytest.mark.asyncio
    async def test_configure_sets_proxy_port(self, installed):
        runner = ScriptedRunner()
        await WarpCliBackend(runner).configure(ClientOptions(proxy_port=40000))
        assert runner.commands == [["warp-cli", "--accept-tos", "proxy", "port", "40000"]]

    @pytest.mark.asyncio
    async def test_configure_rejects_docker(self, installed):
        runner = ScriptedRunner()
        with pytest.raises(ConfigurationError, match="docker"):
            await WarpCliBackend(runner).configure(ClientOptions(client_type="docker"))
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_register_with_organization(self, installed):
        runner = ScriptedRunner()
        await WarpCliBackend(runner).register("acme")
        assert runner.commands[-1][2:] == ["registration", "new", "acme"]

    @pytest.mark.asyncio
    async def test_existing_registration_tolerated(self, installed):
        runner = ScriptedRunner({"registration new": (1, "Error: Old registration is still around. Already registered.")})
        await WarpCliBackend(runner).register()

    @pytest.mark.asyncio
    async def test_already_connected_tolerated(self, installed):
        runner = ScriptedRunner({"connect": (1, "Already connected")})
        await WarpCliBackend(runner).connect()

    @pytest.mark.asyncio
    async def test_connect_failure_carries_diagnostics(self, installed):
        runner = ScriptedRunner({"connect": (1, "Error: Unable to connect. Reason: DNS lookup failed")})
        with pytest.raises(ClientConnectionError, match="DNS lookup failed"):
            await WarpCliBackend(runner).connect()

    @pytest.mark.asyncio
    async def test_enable_proxy_mode(self, installed):
        runner = ScriptedRunner()
        await WarpCliBackend(runner).enable_proxy_mode(40000)
        assert [cmd[2:] for cmd in runner.commands] == [
            ["proxy", "port", "40000"],
            ["mode", "proxy"],
        ]

    @pytest.mark.asyncio
    async def test_enable_proxy_mode_failure(self, installed):
        runner = ScriptedRunner({"mode proxy": (1, "Error: invalid mode")})
        with pytest.raises(ProxyModeError, match="invalid mode"):
            await WarpCliBackend(runner).enable_proxy_mode(40000)


class TestInstall:
    @pytest.mark.asyncio
    async def test_debian_steps(self):
        runner = ScriptedRunner()
        await WarpCliBackend(runner).install("debian")
        assert any("apt-get install -y cloudflare-warp" in script for script in runner.scripts)
        assert runner.scripts[-1] == "systemctl enable --now warp-svc"

    @pytest.mark.asyncio
    async def test_unknown_family(self):
        with pytest.raises(InstallationError, match="Unsupported"):
            await WarpCliBackend(ScriptedRunner()).install("alpine")

    @pytest.mark.asyncio
    async def test_failed_step(self):
        runner = ScriptedRunner({"sh": (100, "E: Unable to locate package")})
        with pytest.raises(InstallationError, match="Installer step failed"):
            await WarpCliBackend(runner).install("rhel")
        assert len(runner.scripts) == 1
