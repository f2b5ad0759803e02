#!/usr/bin/env python3
"""
Unit tests for the Fleet Maintenance Engine
"""

import asyncio
import sys
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vpsops.errors import ProviderError
from vpsops.maintain import (
    MaintenanceEngine, MaintainOptions, MaintainResult,
    PLATFORM_UPDATE_CMD, BARE_UPDATE_CMD, PHASES,
)
from vpsops.models import ServerMode, ServerRecord, StepStatus
from vpsops.ssh_channel import ExecResult


def exec_result(success=True, stdout="", stderr=""):
    return ExecResult(
        command="cmd", exit_code=0 if success else 1, stdout=stdout, stderr=stderr,
        success=success, duration_ms=1.0, host="1.2.3.4",
    )


def make_provider(status="running"):
    provider = MagicMock()
    if isinstance(status, BaseException):
        provider.get_server_status = AsyncMock(side_effect=status)
    else:
        provider.get_server_status = AsyncMock(return_value=status)
    provider.reboot_server = AsyncMock(return_value=None)
    return provider


def make_engine(provider=None, update_ok=True, health=(True,), ssh_ok=True):
    channel = MagicMock()

    async def fake_exec(ip, command, timeout=None):
        if command in (PLATFORM_UPDATE_CMD, BARE_UPDATE_CMD):
            return exec_result(update_ok, stderr="" if update_ok else "apt failed")
        return exec_result(ssh_ok)

    channel.exec = AsyncMock(side_effect=fake_exec)
    probe = MagicMock()
    probe.poll_platform = AsyncMock(side_effect=list(health))
    provider = provider or make_provider()
    factory = MagicMock(return_value=provider)
    sleep = AsyncMock()
    engine = MaintenanceEngine(channel, probe, factory, MaintainOptions(), sleep)
    return engine, channel, probe, provider, sleep


def server(id="42", mode=ServerMode.MANAGED):
    return ServerRecord(id=id, name="web-1", provider="hetzner", ip="1.2.3.4", mode=mode)


def statuses(result):
    return [s.status for s in result.steps]


def run(coro):
    return asyncio.run(coro)


class TestMaintainSequence:

    def test_full_success(self):
        engine, channel, probe, provider, sleep = make_engine(health=(True, True))
        result = run(engine.maintain(server(), "tok"))

        assert isinstance(result, MaintainResult)
        assert result.success is True
        assert statuses(result) == [StepStatus.SUCCESS] * 5
        assert [s.step for s in result.steps] == [1, 2, 3, 4, 5]
        assert [s.name for s in result.steps] == [PHASES[i] for i in range(1, 6)]
        provider.reboot_server.assert_awaited_once_with("42")

    def test_not_running_skips_everything(self):
        engine, channel, *_ = make_engine(provider=make_provider("off"))
        result = run(engine.maintain(server(), "tok"))

        assert result.success is False
        assert statuses(result) == [StepStatus.FAILURE] + [StepStatus.SKIPPED] * 4
        assert "off" in result.steps[0].detail
        channel.exec.assert_not_awaited()

    def test_status_provider_error_has_hint(self):
        provider = make_provider(ProviderError("unauthorized", status_code=401))
        engine, *_ = make_engine(provider=provider)
        result = run(engine.maintain(server(), "tok"))

        assert result.success is False
        assert result.steps[0].status is StepStatus.FAILURE
        assert "token" in result.steps[0].hint
        assert statuses(result)[1:] == [StepStatus.SKIPPED] * 4

    def test_update_failure_skips_rest(self):
        engine, _, probe, provider, _ = make_engine(update_ok=False)
        result = run(engine.maintain(server(), "tok"))

        assert result.success is False
        assert statuses(result) == [
            StepStatus.SUCCESS, StepStatus.FAILURE,
            StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.SKIPPED,
        ]
        probe.poll_platform.assert_not_awaited()
        provider.reboot_server.assert_not_awaited()

    def test_health_failure_is_soft(self):
        engine, _, _, provider, _ = make_engine(health=(False, True))
        result = run(engine.maintain(server(), "tok"))

        assert statuses(result) == [
            StepStatus.SUCCESS, StepStatus.SUCCESS, StepStatus.FAILURE,
            StepStatus.SUCCESS, StepStatus.SUCCESS,
        ]
        assert result.success is False
        provider.reboot_server.assert_awaited_once()

    def test_skip_reboot(self):
        engine, _, _, provider, _ = make_engine(health=(True,))
        result = run(engine.maintain(server(), "tok", skip_reboot=True))

        assert result.success is True
        assert statuses(result)[3:] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        assert result.steps[3].detail == "Skipped by user"
        provider.reboot_server.assert_not_awaited()

    def test_manual_server(self):
        engine, _, _, provider, _ = make_engine(health=(True,))
        result = run(engine.maintain(server(id="manual-1"), ""))

        assert result.success is True
        assert result.steps[0].status is StepStatus.SKIPPED
        assert statuses(result)[3:] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        provider.get_server_status.assert_not_awaited()

    def test_bare_uses_apt_and_ssh_health(self):
        engine, channel, probe, _, _ = make_engine()
        result = run(engine.maintain(server(mode=ServerMode.BARE), "tok", skip_reboot=True))

        assert result.success is True
        commands = [c.args[1] for c in channel.exec.await_args_list]
        assert BARE_UPDATE_CMD in commands
        assert PLATFORM_UPDATE_CMD not in commands
        probe.poll_platform.assert_not_awaited()

    def test_result_to_dict(self):
        engine, *_ = make_engine(health=(True, True))
        d = run(engine.maintain(server(), "tok")).to_dict()
        assert d["server"] == "web-1"
        assert d["steps"][0]["status"] == "success"


class TestRebootAndWait:

    def test_manual_rejected(self):
        engine, *_ = make_engine()
        result = run(engine.reboot_and_wait(server(id="manual-9"), "tok"))
        assert result.success is False
        assert "ssh root@1.2.3.4 reboot" in result.error

    def test_tolerates_poll_errors(self):
        provider = make_provider()
        provider.get_server_status = AsyncMock(side_effect=[
            ProviderError("boom", status_code=503), "starting", "running",
        ])
        engine, _, _, _, sleep = make_engine(provider=provider)
        result = run(engine.reboot_and_wait(server(), "tok"))

        assert result.success is True
        assert result.final_status == "running"
        sleep.assert_any_await(10)

    def test_timeout(self):
        provider = make_provider("starting")
        engine, *_ = make_engine(provider=provider)
        engine.options = MaintainOptions(reboot_attempts=3)
        result = run(engine.reboot_and_wait(server(), "tok"))

        assert result.success is False
        assert result.final_status == "timeout"
        assert provider.get_server_status.await_count == 3

    def test_reboot_call_failure(self):
        provider = make_provider()
        provider.reboot_server = AsyncMock(side_effect=ProviderError("limit", status_code=429))
        engine, *_ = make_engine(provider=provider)
        result = run(engine.reboot_and_wait(server(), "tok"))
        assert result.success is False
        assert "rate limit" in result.hint


class TestExecuteUpdate:

    def test_failure_reports_exit_code(self):
        engine, *_ = make_engine(update_ok=False)
        result = run(engine.execute_update(server()))
        assert result.success is False
        assert "exit code 1" in result.error
        assert result.output == "apt failed"

    def test_invalid_ip(self):
        engine, channel, *_ = make_engine()
        bad = ServerRecord(id="1", name="x", provider="hetzner", ip="pending")
        result = run(engine.execute_update(bad))
        assert result.success is False
        channel.exec.assert_not_awaited()


class TestMaintainAll:

    def test_runs_each_server(self):
        engine, *_ = make_engine(health=(True,) * 4)
        servers = [server(id="1"), server(id="2")]
        results = run(engine.maintain_all(servers, {"hetzner": "tok"}, skip_reboot=True))
        assert len(results) == 2
        assert all(r.success for r in results)


def test_options_from_config():
    from vpsops.config import MaintenanceConfig
    opts = MaintainOptions.from_config(MaintenanceConfig(health_attempts=3, reboot_interval=1))
    assert opts.health_attempts == 3
    assert opts.reboot_interval == 1
    assert opts.reboot_initial_wait == 10
