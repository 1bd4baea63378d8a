"""Shared test fixtures for garm-provider-ec2."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from garm_ec2.client import EC2Client
from garm_ec2.config import Config, Credentials
from garm_ec2.params import BootstrapInstance
from garm_ec2.provider import EC2Provider

CONTROLLER_ID = "ctrl-1"

TOOLS = [
    {
        "os": "linux",
        "architecture": "x64",
        "download_url": "https://example.com/actions-runner-linux-x64-2.311.0.tar.gz",
        "filename": "actions-runner-linux-x64-2.311.0.tar.gz",
        "sha256_checksum": "29fc8cf2dab4c195bb147384e7e2c94cfd4d4022c793b346a6175435265aa278",
    },
    {
        "os": "linux",
        "architecture": "arm64",
        "download_url": "https://example.com/actions-runner-linux-arm64-2.311.0.tar.gz",
        "filename": "actions-runner-linux-arm64-2.311.0.tar.gz",
    },
    {
        "os": "win",
        "architecture": "x64",
        "download_url": "https://example.com/actions-runner-win-x64-2.311.0.zip",
        "filename": "actions-runner-win-x64-2.311.0.zip",
    },
]


def _not_found(operation: str, instance_id: str) -> ClientError:
    return ClientError(
        {"Error": {
            "Code": "InvalidInstanceID.NotFound",
            "Message": f"The instance ID '{instance_id}' does not exist",
        }},
        operation,
    )


class _FakePaginator:
    def __init__(self, describe: Callable[..., Dict[str, Any]]) -> None:
        self._describe = describe

    def paginate(self, **kwargs: Any) -> List[Dict[str, Any]]:
        return [self._describe(**kwargs)]


class FakeEC2:
    """In-memory stand-in for the boto3 EC2 client.

    Honors tag and instance-state-name filters the way EC2 does, so tests
    can exercise tag-based lookups end to end.
    """

    def __init__(self) -> None:
        self.instances: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self._counter = 0

    # -- helpers -------------------------------------------------------

    def add_instance(
        self,
        tags: Dict[str, str],
        state: str = "running",
        instance_id: Optional[str] = None,
        **extra: Any,
    ) -> str:
        self._counter += 1
        instance_id = instance_id or f"i-{self._counter:017x}"
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "State": {"Name": state},
            "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
            "Architecture": "x86_64",
            "PlatformDetails": "Linux/UNIX",
            "PrivateIpAddress": f"10.0.0.{self._counter}",
            **extra,
        }
        return instance_id

    def _matches(self, instance: Dict[str, Any], filters: List[Dict[str, Any]]) -> bool:
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        for f in filters:
            name, values = f["Name"], f["Values"]
            if name.startswith("tag:"):
                if tags.get(name[len("tag:"):]) not in values:
                    return False
            elif name == "instance-state-name":
                if instance["State"]["Name"] not in values:
                    return False
            else:
                raise AssertionError(f"unsupported filter {name}")
        return True

    def _get(self, operation: str, instance_id: str) -> Dict[str, Any]:
        if instance_id not in self.instances:
            raise _not_found(operation, instance_id)
        return self.instances[instance_id]

    # -- EC2 API -------------------------------------------------------

    def run_instances(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(("run_instances", kwargs))
        tags = {t["Key"]: t["Value"] for t in kwargs["TagSpecifications"][0]["Tags"]}
        instance_id = self.add_instance(
            tags,
            state="pending",
            ImageId=kwargs["ImageId"],
            InstanceType=kwargs["InstanceType"],
        )
        return {"Instances": [copy.deepcopy(self.instances[instance_id])]}

    def describe_instances(
        self,
        InstanceIds: Optional[List[str]] = None,
        Filters: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        self.calls.append(("describe_instances", {"InstanceIds": InstanceIds, "Filters": Filters}))
        if InstanceIds:
            found = [self._get("DescribeInstances", i) for i in InstanceIds]
        else:
            found = [i for i in self.instances.values() if self._matches(i, Filters or [])]
        return {"Reservations": [{"Instances": [copy.deepcopy(i)]} for i in found]}

    def get_paginator(self, name: str) -> _FakePaginator:
        assert name == "describe_instances"
        return _FakePaginator(self.describe_instances)

    def start_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        self.calls.append(("start_instances", {"InstanceIds": InstanceIds}))
        for i in InstanceIds:
            self._get("StartInstances", i)["State"] = {"Name": "pending"}
        return {}

    def stop_instances(self, InstanceIds: List[str], Force: bool = False) -> Dict[str, Any]:
        self.calls.append(("stop_instances", {"InstanceIds": InstanceIds, "Force": Force}))
        for i in InstanceIds:
            self._get("StopInstances", i)["State"] = {"Name": "stopping"}
        return {}

    def terminate_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        self.calls.append(("terminate_instances", {"InstanceIds": InstanceIds}))
        for i in InstanceIds:
            self._get("TerminateInstances", i)["State"] = {"Name": "terminated"}
        return {}

    def called(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]


@pytest.fixture
def fake_ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def config() -> Config:
    """A valid provider config with static credentials."""
    return Config(
        region="us-east-1",
        subnet_id="subnet-default",
        credentials=Credentials(
            access_key_id="AKIATEST",
            secret_access_key="secret",
            session_token="token",
        ),
    )


@pytest.fixture
def ec2_client(config: Config, fake_ec2: FakeEC2) -> EC2Client:
    return EC2Client(config, ec2=fake_ec2)


@pytest.fixture
def provider(config: Config, ec2_client: EC2Client) -> EC2Provider:
    return EC2Provider(config, CONTROLLER_ID, client=ec2_client)


@pytest.fixture
def make_bootstrap() -> Callable[..., BootstrapInstance]:
    """Factory for bootstrap requests with sensible defaults."""

    def _make(**overrides: Any) -> BootstrapInstance:
        data: Dict[str, Any] = {
            "name": "runner-1",
            "pool_id": "pool-A",
            "os_type": "linux",
            "arch": "amd64",
            "image": "ami-0123456789abcdef0",
            "flavor": "t3.medium",
            "repo_url": "https://github.com/example/repo",
            "callback-url": "https://garm.example.com/api/v1/callbacks",
            "metadata-url": "https://garm.example.com/api/v1/metadata",
            "instance-token": "jwt-token",
            "labels": ["ubuntu", "ec2"],
            "tools": copy.deepcopy(TOOLS),
        }
        data.update(overrides)
        return BootstrapInstance.model_validate(data)

    return _make


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A valid TOML config file on disk."""
    path = tmp_path / "garm-provider-ec2.toml"
    path.write_text(
        'region = "eu-central-1"\n'
        'subnet_id = "subnet-0123"\n'
        'security_group_ids = ["sg-0123"]\n'
        "\n"
        "[credentials]\n"
        'access_key_id = "AKIATEST"\n'
        'secret_access_key = "secret"\n'
        'session_token = "token"\n'
    )
    return path
