"""Unit tests for the bounded command runner (uses real processes)."""

import pytest

from egress_sidecar.middleware.error_handler import ProbeTimeoutError
from egress_sidecar.system.commands import COMMAND_NOT_FOUND, CommandResult, CommandRunner


class TestCommandResult:
    def test_output_combines_streams(self):
        result = CommandResult(("x",), 1, "out\n", "err\n")
        assert result.ok is False
        assert result.output == "out\nerr"

    def test_output_skips_empty(self):
        assert CommandResult(("x",), 0, "", "err").output == "err"


class TestCommandRunner:
    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        result = await CommandRunner().run(["echo", "hello"])
        assert result.ok
        assert result.stdout.strip() == "hello"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        result = await CommandRunner().run(["false"])
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        result = await CommandRunner().run(["definitely-not-a-real-binary-xyz"])
        assert result.returncode == COMMAND_NOT_FOUND

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        with pytest.raises(ProbeTimeoutError, match="timed out"):
            await CommandRunner().run(["sleep", "5"], timeout=0.1)

    @pytest.mark.asyncio
    async def test_shell_pipeline(self):
        result = await CommandRunner().run_shell("echo a b | wc -w")
        assert result.stdout.strip() == "2"

    @pytest.mark.asyncio
    async def test_redacted_arguments(self):
        result = await CommandRunner().run(["echo", "secret-key"], redact=("secret-key",))
        assert result.describe() == "echo ***"
        assert result.stdout.strip() == "secret-key"

    @pytest.mark.asyncio
    async def test_redacted_in_timeout_message(self):
        with pytest.raises(ProbeTimeoutError) as excinfo:
            await CommandRunner().run(["sleep", "5"], timeout=0.1, redact=("5",))
        assert "sleep ***" in excinfo.value.message
