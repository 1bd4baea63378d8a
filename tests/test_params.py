"""Tests for the wire models."""

from __future__ import annotations

import json

import pytest

from garm_ec2.params import (
    BootstrapInstance,
    InstanceStatus,
    OSArch,
    OSType,
    ProviderInstance,
)


class TestInstanceStatus:
    @pytest.mark.parametrize("state", ["pending", "running", "stopping", "stopped", "terminated"])
    def test_known_states(self, state):
        assert InstanceStatus.from_ec2_state(state).value == state

    @pytest.mark.parametrize("state", ["shutting-down", "", None])
    def test_other_states_are_unknown(self, state):
        assert InstanceStatus.from_ec2_state(state) == InstanceStatus.UNKNOWN


class TestBootstrapInstance:
    def test_dashed_keys(self):
        bootstrap = BootstrapInstance.model_validate_json(json.dumps({
            "name": "runner-1",
            "callback-url": "https://cb",
            "metadata-url": "https://md",
            "instance-token": "tok",
            "ssh-keys": ["ssh-ed25519 AAAA"],
            "github-runner-group": "ci",
            "ca-cert-bundle": "PEM",
        }))
        assert bootstrap.callback_url == "https://cb"
        assert bootstrap.metadata_url == "https://md"
        assert bootstrap.instance_token == "tok"
        assert bootstrap.ssh_keys == ["ssh-ed25519 AAAA"]
        assert bootstrap.github_runner_group == "ci"
        assert bootstrap.ca_cert_bundle == "PEM"

    @pytest.mark.parametrize("raw,expected", [
        ("linux", OSType.LINUX),
        ("Linux", OSType.LINUX),
        ("WINDOWS", OSType.WINDOWS),
        ("freebsd", OSType.UNKNOWN),
    ])
    def test_os_type_normalized(self, raw, expected):
        assert BootstrapInstance(name="r", os_type=raw).os_type == expected

    def test_defaults(self):
        bootstrap = BootstrapInstance()
        assert bootstrap.os_type == OSType.LINUX
        assert bootstrap.arch == OSArch.AMD64
        assert bootstrap.os_arch == OSArch.AMD64
        assert bootstrap.tools == []
        assert bootstrap.extra_specs is None

    @pytest.mark.parametrize("raw,expected", [
        ("amd64", OSArch.AMD64),
        ("ARM64", OSArch.ARM64),
        ("sparc", OSArch.UNKNOWN),
    ])
    def test_arch_normalized(self, raw, expected):
        assert BootstrapInstance(arch=raw).arch == expected

    def test_unknown_keys_ignored(self):
        bootstrap = BootstrapInstance.model_validate({"name": "r", "jit_config_enabled": True})
        assert bootstrap.name == "r"


class TestProviderInstance:
    def test_wire_form(self):
        record = ProviderInstance(
            provider_id="i-1",
            name="runner-1",
            os_type="linux",
            status=InstanceStatus.RUNNING,
            addresses=[{"address": "10.0.0.1"}],
        )
        assert record.to_wire() == {
            "provider_id": "i-1",
            "name": "runner-1",
            "os_type": "linux",
            "addresses": [{"address": "10.0.0.1", "type": "private"}],
            "status": "running",
        }
