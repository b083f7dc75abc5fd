"""Tests for the remote executor."""

import asyncio
import logging

import pytest

from conftest import FakeTransport, ok
from clawfleet.exceptions import ErrorTypes, PolicyViolation, TransportError
from clawfleet.executor import RemoteExecutor
from clawfleet.policy import CommandPolicy, PolicyRule
from clawfleet.retry import RetryConfig


class TestPolicyEnforcement:
    """Tests that the allow-list is checked before any connection."""

    @pytest.mark.asyncio
    async def test_unknown_command_raises_without_io(self, executor, transport, target):
        """An unknown name never reaches the transport."""
        with pytest.raises(PolicyViolation) as exc_info:
            await executor.run_named("rm -rf /", target)

        assert exc_info.value.command == "rm -rf /"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_deny_rule_raises_without_io(self, transport, target):
        """An operator deny rule blocks an allow-listed command."""
        policy = CommandPolicy([PolicyRule("deny", {"command": "stop", "instance": "prod*"})])
        executor = RemoteExecutor(transport, policy, RetryConfig(delay=0.0))

        with pytest.raises(PolicyViolation):
            await executor.run_named("stop", target, instance_id="prod-eu")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_deny_rule_scoped_to_instance(self, transport, target):
        """The same command still runs on other instances."""
        transport.on_named("stop", ok("OpenClaw processes stopped"))
        policy = CommandPolicy([PolicyRule("deny", {"command": "stop", "instance": "prod*"})])
        executor = RemoteExecutor(transport, policy, RetryConfig(delay=0.0))

        result = await executor.run_named("stop", target, instance_id="staging")

        assert result.success
        assert transport.names() == ["stop"]

    @pytest.mark.asyncio
    async def test_internal_reads_ignore_deny_rules(self, transport, target):
        transport.on_named("cli-devices-list", ok("{}"))
        policy = CommandPolicy([PolicyRule("deny", {"command": "*"})])
        executor = RemoteExecutor(transport, policy, RetryConfig(delay=0.0))

        result = await executor.run_allowed("cli-devices-list", target)

        assert result.success
        assert transport.names() == ["cli-devices-list"]

    @pytest.mark.asyncio
    async def test_internal_reads_still_need_the_allow_list(self, executor, transport, target):
        with pytest.raises(PolicyViolation):
            await executor.run_allowed("reboot", target)
        assert transport.calls == []


class TestResults:
    """Tests for turning session output into ExecutionResult."""

    @pytest.mark.asyncio
    async def test_success_strips_output(self, executor, transport, target):
        transport.on_named("view-log", ok("  line one\nline two \n"))

        result = await executor.run_named("view-log", target)

        assert result.success
        assert result.output == "line one\nline two"
        assert result.exit_code == 0
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_an_answer_not_retried(self, executor, transport, target):
        """A command that ran and failed is reported, not repeated."""
        transport.on_named("check-firewall", ok("", "", 2))

        result = await executor.run_named("check-firewall", target)

        assert not result.success
        assert result.exit_code == 2
        assert result.error == "Command exited with status 2"
        assert result.error_type is None
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_stderr_becomes_error(self, executor, transport, target):
        transport.on_named("check-firewall", ok("", "ufw: command not found", 127))

        result = await executor.run_named("check-firewall", target)

        assert result.error == "ufw: command not found"

    @pytest.mark.asyncio
    async def test_grep_probe_accepts_output_on_failure(self, executor, transport, target):
        """status is a grep pipeline; output with a non-zero exit still counts."""
        transport.on_named("status", ok("root 42 openclaw gateway\n---PORTS---", exit_status=1))

        result = await executor.run_named("status", target)

        assert result.success
        assert "openclaw gateway" in result.output

    @pytest.mark.asyncio
    async def test_raw_command_with_custom_exit_codes(self, executor, transport, target):
        transport.on_command("echo hi; exit 1", ok("hi", exit_status=1))

        result = await executor.run_raw("echo hi; exit 1", target, ok_exit_codes=(0, 1))

        assert result.success
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_timeout_is_passed_to_transport(self, executor, transport, target):
        transport.on_named("view-log", ok("x"))

        await executor.run_named("view-log", target)
        await executor.run_named("view-log", target, timeout=5)

        assert [c.timeout for c in transport.calls] == [120.0, 5]


class TestRetries:
    """Tests for transport failure handling."""

    @pytest.mark.asyncio
    async def test_transport_failure_then_success(self, executor, transport, target):
        transport.on_named(
            "view-log",
            TransportError("refused", ErrorTypes.CONNECTION_REFUSED),
            ok("recovered"),
        )

        result = await executor.run_named("view-log", target)

        assert result.success
        assert result.output == "recovered"
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_recovery_logs_last_error(self, executor, transport, target, caplog):
        transport.on_named(
            "view-log",
            TransportError("refused", ErrorTypes.CONNECTION_REFUSED),
            ok("recovered"),
        )

        with caplog.at_level(logging.INFO, logger="clawfleet.executor"):
            await executor.run_named("view-log", target)

        assert "recovered after 2 attempts (last error: connection_refused)" in caplog.text

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_failure(self, target):
        transport = FakeTransport(default=TransportError("timed out", ErrorTypes.CONNECTION_TIMEOUT))
        executor = RemoteExecutor(transport, retry=RetryConfig(max_attempts=1, delay=0.0))

        result = await executor.run_named("view-log", target)

        assert not result.success
        assert result.attempts == 2
        assert result.error_type == ErrorTypes.CONNECTION_TIMEOUT
        assert result.exit_code is None

    @pytest.mark.asyncio
    async def test_retries_override(self, target):
        transport = FakeTransport(default=TransportError("boom"))
        executor = RemoteExecutor(transport, retry=RetryConfig(max_attempts=3, delay=0.0))

        result = await executor.run_named("view-log", target, retries=0)

        assert result.attempts == 1
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_redacted(self, target):
        transport = FakeTransport(default=TransportError("login with s3cret rejected"))
        executor = RemoteExecutor(transport, retry=RetryConfig(max_attempts=0))

        result = await executor.run_named("view-log", target)

        assert "s3cret" not in result.error
        assert "***" in result.error


class TestCancellation:
    """Tests that an abandoned call does not tear down its session."""

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_session_running(self, executor, transport, target):
        release = asyncio.Event()

        async def slow(command):
            await release.wait()
            return ok("done")

        transport.on_command("slow-command", slow)

        task = asyncio.create_task(executor.run_raw("slow-command", target))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(executor._inflight) == 1

        release.set()
        await asyncio.sleep(0.01)

        assert transport.completed == ["slow-command"]
        assert not executor._inflight
