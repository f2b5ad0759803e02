#!/usr/bin/env python3
"""
Unit tests for the Provisioning Workflow
"""

import asyncio
import sys
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vpsops.config import ProvisioningConfig
from vpsops.errors import ProviderError
from vpsops.models import ServerMode, ServerResult
from vpsops.provision import (
    ProvisioningWorkflow, ProvisionRequest, IP_WAIT, PENDING_IP,
    is_pending_ip, is_valid_provider, validate_server_name, upload_ssh_key_best_effort,
)
from vpsops.store import ServerStore


def make_provider(create_ip="1.2.3.4", statuses=("running",), details_ip="pending"):
    provider = MagicMock()
    provider.validate_token = AsyncMock(return_value=True)
    provider.upload_ssh_key = AsyncMock(return_value="777")
    provider.create_server = AsyncMock(return_value=ServerResult(id="99", ip=create_ip, status="initializing"))
    provider.get_server_status = AsyncMock(side_effect=list(statuses))
    provider.get_server_details = AsyncMock(return_value=ServerResult(id="99", ip=details_ip, status="running"))
    return provider


def make_keys(public_key="ssh-ed25519 AAAA test"):
    keys = MagicMock()
    keys.get_or_create_public_key.return_value = public_key
    keys.key_name.return_value = "vpsops-1"
    return keys


def make_workflow(tmp_path, provider, token="tok", keys=None):
    store = ServerStore(tmp_path / "servers.json")
    sleep = AsyncMock()
    workflow = ProvisioningWorkflow(
        provider_factory=MagicMock(return_value=provider),
        store=store,
        key_manager=keys or make_keys(),
        config=ProvisioningConfig(),
        sleep=sleep,
        token_lookup=lambda name: token,
    )
    return workflow, store, sleep


def request(**overrides):
    fields = {"provider": "hetzner", "name": "web-1"}
    fields.update(overrides)
    return ProvisionRequest(**fields)


def run(coro):
    return asyncio.run(coro)


class TestHelpers:

    @pytest.mark.parametrize("ip", ["", "pending", "0.0.0.0", None])
    def test_pending(self, ip):
        assert is_pending_ip(ip) is True

    def test_not_pending(self):
        assert is_pending_ip("1.2.3.4") is False

    def test_providers(self):
        assert is_valid_provider("vultr")
        assert not is_valid_provider("aws")

    @pytest.mark.parametrize("name", ["web", "web-1", "a" * 63, "my-server-2"])
    def test_good_names(self, name):
        assert validate_server_name(name) is None

    @pytest.mark.parametrize("name", ["", "ab", "a" * 64, "1web", "Web", "web-", "web_1", "web.1", "web\n"])
    def test_bad_names(self, name):
        assert validate_server_name(name) is not None

    def test_ip_wait_table(self):
        assert IP_WAIT["hetzner"] == (10, 3)
        assert IP_WAIT["vultr"] == (40, 5)


class TestSshKeyUpload:

    def test_upload(self):
        provider = make_provider()
        assert run(upload_ssh_key_best_effort(provider, make_keys())) == ["777"]

    def test_no_key(self):
        provider = make_provider()
        assert run(upload_ssh_key_best_effort(provider, make_keys(None))) == []
        provider.upload_ssh_key.assert_not_awaited()

    def test_upload_error_is_swallowed(self):
        provider = make_provider()
        provider.upload_ssh_key = AsyncMock(side_effect=ProviderError("dup", status_code=409))
        assert run(upload_ssh_key_best_effort(provider, make_keys())) == []


class TestProvision:

    def test_success(self, tmp_path):
        provider = make_provider()
        workflow, store, _ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))

        assert result.success is True
        assert result.hint is None
        assert result.server.ip == "1.2.3.4"
        assert result.server.region == "nbg1"
        assert result.server.size == "cax11"
        assert store.find("web-1").id == "99"

        config = provider.create_server.await_args.args[0]
        assert config.ssh_key_ids == ["777"]
        assert "coolify" in config.cloud_init

    def test_explicit_placement_beats_template(self, tmp_path):
        provider = make_provider()
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request(region="hel1", size="cpx21", template="production")))
        assert (result.server.region, result.server.size) == ("hel1", "cpx21")

    def test_pending_ip_never_resolves(self, tmp_path):
        provider = make_provider(create_ip="pending", details_ip="pending")
        workflow, store, sleep = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))

        assert result.success is True
        assert "not yet assigned" in result.hint
        assert result.server.ip == PENDING_IP
        assert store.list()[0].ip == PENDING_IP
        assert provider.get_server_details.await_count == IP_WAIT["hetzner"][0]

    def test_pending_ip_resolves(self, tmp_path):
        provider = make_provider(create_ip="")
        provider.get_server_details = AsyncMock(side_effect=[
            ServerResult("99", "pending", "running"),
            ServerResult("99", "5.6.7.8", "running"),
        ])
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))
        assert result.success is True
        assert result.server.ip == "5.6.7.8"
        assert result.hint is None

    def test_invalid_ip_downgraded(self, tmp_path):
        provider = make_provider(create_ip="2001:db8::1")
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))
        assert result.success is True
        assert result.server.ip == PENDING_IP

    def test_boot_timeout_is_terminal(self, tmp_path):
        provider = make_provider(statuses=["initializing"] * 30)
        workflow, store, _ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))

        assert result.success is False
        assert "did not boot" in result.error
        assert store.list() == []

    def test_invalid_provider(self, tmp_path):
        workflow, *_ = make_workflow(tmp_path, make_provider())
        result = run(workflow.provision(request(provider="aws")))
        assert result.success is False
        assert "Invalid provider" in result.error

    def test_invalid_name(self, tmp_path):
        workflow, *_ = make_workflow(tmp_path, make_provider())
        result = run(workflow.provision(request(name="Bad_Name")))
        assert result.success is False

    def test_unknown_template_without_placement(self, tmp_path):
        workflow, *_ = make_workflow(tmp_path, make_provider())
        result = run(workflow.provision(request(provider="vultr")))
        assert result.success is False
        assert "region/size" in result.error

    def test_missing_token(self, tmp_path):
        workflow, *_ = make_workflow(tmp_path, make_provider(), token=None)
        result = run(workflow.provision(request()))
        assert result.success is False
        assert "HETZNER_TOKEN" in result.hint

    def test_rejected_token(self, tmp_path):
        provider = make_provider()
        provider.validate_token = AsyncMock(return_value=False)
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))
        assert result.success is False
        provider.create_server.assert_not_awaited()

    def test_key_failure_does_not_block(self, tmp_path):
        provider = make_provider()
        keys = make_keys()
        keys.get_or_create_public_key.side_effect = OSError("read-only home")
        workflow, *_ = make_workflow(tmp_path, provider, keys=keys)
        result = run(workflow.provision(request()))

        assert result.success is True
        assert provider.create_server.await_args.args[0].ssh_key_ids == []

    def test_create_failure_has_hint(self, tmp_path):
        provider = make_provider()
        provider.create_server = AsyncMock(side_effect=ProviderError("no money", status_code=402))
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request()))
        assert result.success is False
        assert "Server creation failed" in result.error
        assert "balance" in result.hint

    def test_bare_mode_bootstrap(self, tmp_path):
        provider = make_provider()
        workflow, *_ = make_workflow(tmp_path, provider)
        result = run(workflow.provision(request(mode=ServerMode.BARE)))

        assert result.server.mode is ServerMode.BARE
        cloud_init = provider.create_server.await_args.args[0].cloud_init
        assert "coolify" not in cloud_init
        assert "ufw" in cloud_init


def test_default_store_is_configured_registry():
    from vpsops.config import OrchestratorConfig
    workflow = ProvisioningWorkflow(key_manager=make_keys())
    assert workflow.store.path == OrchestratorConfig().servers_file
