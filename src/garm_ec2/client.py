"""
EC2 client — the instance lifecycle against the compute API.

Each method is exactly one request (plus pagination for filtered
describes). Nothing is cached, retried or waited on: the instance tags
are the only record of which runner is which, and the provider's own
answer to ``describe_instances`` is the only source of state.

Tagging convention (every launched instance carries all five):

- ``Name``: runner name as known to the orchestrator
- ``GARM_POOL_ID``: owning pool
- ``GARM_CONTROLLER_ID``: owning orchestrator installation
- ``OSType`` / ``OSArch``: platform the runner was built for
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import Config
from .errors import CloudAPIError, InvalidArgumentError, NotFoundError
from .spec import RunnerSpec

logger = logging.getLogger(__name__)

NAME_TAG = "Name"
POOL_ID_TAG = "GARM_POOL_ID"
CONTROLLER_ID_TAG = "GARM_CONTROLLER_ID"
OS_TYPE_TAG = "OSType"
OS_ARCH_TAG = "OSArch"

# EC2 instance IDs are "i-" followed by 8 or 17 hex digits.
INSTANCE_ID_PREFIX = "i-"

# Everything but "terminated": a terminated instance is gone for lookup purposes.
_LIVE_STATES = ["pending", "running", "shutting-down", "stopping", "stopped"]

_NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}


def is_instance_id(identifier: str) -> bool:
    """True if *identifier* looks like an EC2 instance ID rather than a name."""
    return identifier.startswith(INSTANCE_ID_PREFIX)


def instance_tags(instance: Dict[str, Any]) -> Dict[str, str]:
    """Flatten an instance's ``Tags`` list into a dict."""
    return {t["Key"]: t.get("Value", "") for t in instance.get("Tags", []) if "Key" in t}


@contextmanager
def _translate_errors(operation: str, message: str) -> Iterator[None]:
    """Turn botocore failures into provider errors.

    Instance-ID not-found codes become NotFoundError; everything else is a
    CloudAPIError carrying the AWS error code.
    """
    try:
        yield
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code")
        if code in _NOT_FOUND_CODES:
            raise NotFoundError(message, operation=operation, cause=exc) from exc
        raise CloudAPIError(message, operation=operation, cause=exc, code=code) from exc
    except BotoCoreError as exc:
        raise CloudAPIError(message, operation=operation, cause=exc) from exc


class EC2Client:
    """Thin, stateless wrapper around the boto3 EC2 client.

    Args:
        config: Validated provider configuration.
        ec2: Pre-built boto3 EC2 client. When omitted, one is created from
            the configured credentials, region and timeouts.
    """

    def __init__(self, config: Config, ec2: Optional[Any] = None) -> None:
        self._config = config
        self._region = config.region
        self._ec2 = ec2 if ec2 is not None else self._new_ec2_client()

    def _new_ec2_client(self) -> Any:
        """Create a boto3 EC2 client from the static configuration."""
        boto_config = BotoConfig(
            region_name=self._config.region,
            connect_timeout=self._config.timeouts.connect,
            read_timeout=self._config.timeouts.read,
            retries={"total_max_attempts": self._config.max_attempts, "mode": "standard"},
        )
        with _translate_errors("new_ec2_client", "failed to create EC2 client"):
            session = boto3.session.Session(**self._config.session_kwargs())
            return session.client("ec2", config=boto_config)

    @property
    def region(self) -> str:
        return self._region

    # ------------------------------------------------------------------
    # Describe helpers
    # ------------------------------------------------------------------

    def _describe(self, operation: str, message: str, **kwargs: Any) -> List[Dict[str, Any]]:
        """Run a filtered describe across all pages, flattening reservations."""
        instances: List[Dict[str, Any]] = []
        with _translate_errors(operation, message):
            paginator = self._ec2.get_paginator("describe_instances")
            for page in paginator.paginate(**kwargs):
                for reservation in page.get("Reservations", []):
                    instances.extend(reservation.get("Instances", []))
        return instances

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_running_instance(self, spec: Optional[RunnerSpec]) -> str:
        """Launch one runner instance.

        Args:
            spec: A sealed runner spec.

        Returns:
            The new instance ID.

        Raises:
            InvalidArgumentError: If *spec* is None.
            CloudAPIError: If EC2 rejects the launch.
        """
        if spec is None:
            raise InvalidArgumentError("invalid nil runner spec", operation="create_running_instance")

        bootstrap = spec.bootstrap_params
        run_kwargs: Dict[str, Any] = {
            "ImageId": spec.image,
            "InstanceType": spec.flavor,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": spec.user_data,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": NAME_TAG, "Value": bootstrap.name},
                        {"Key": POOL_ID_TAG, "Value": bootstrap.pool_id},
                        {"Key": OS_TYPE_TAG, "Value": bootstrap.os_type.value},
                        {"Key": OS_ARCH_TAG, "Value": bootstrap.arch.value},
                        {"Key": CONTROLLER_ID_TAG, "Value": spec.controller_id},
                    ],
                }
            ],
        }
        if spec.subnet_id:
            run_kwargs["SubnetId"] = spec.subnet_id
        if self._config.security_group_ids:
            run_kwargs["SecurityGroupIds"] = list(self._config.security_group_ids)
        if self._config.key_name:
            run_kwargs["KeyName"] = self._config.key_name
        mappings = spec.block_device_mappings()
        if mappings:
            run_kwargs["BlockDeviceMappings"] = mappings

        logger.info(
            "Launching EC2 instance %s (type=%s ami=%s region=%s pool=%s)",
            bootstrap.name, spec.flavor, spec.image, self._region, bootstrap.pool_id,
        )

        with _translate_errors("create_running_instance", "failed to create instance"):
            result = self._ec2.run_instances(**run_kwargs)

        instances = result.get("Instances") or []
        if not instances or not instances[0].get("InstanceId"):
            raise CloudAPIError("launch returned no instance", operation="create_running_instance")

        instance_id = instances[0]["InstanceId"]
        logger.info("Launched EC2 instance %s for runner %s", instance_id, bootstrap.name)
        return instance_id

    def get_instance(self, instance_id: str) -> Dict[str, Any]:
        """Describe one instance by ID.

        Raises:
            NotFoundError: If EC2 knows no such instance.
            CloudAPIError: On any other API failure.
        """
        with _translate_errors("get_instance", f"failed to get instance {instance_id}"):
            resp = self._ec2.describe_instances(InstanceIds=[instance_id])

        instances: List[Dict[str, Any]] = []
        for reservation in resp.get("Reservations", []):
            instances.extend(reservation.get("Instances", []))

        if not instances:
            raise NotFoundError(f"no such instance {instance_id}", operation="get_instance")
        return instances[0]

    def find_instance_by_tags(self, tags: Dict[str, str]) -> Dict[str, Any]:
        """Find a live instance by controller ID and runner name.

        Both tags are matched together, so a runner name reused by another
        controller on the same account is never returned.

        Args:
            tags: Must hold non-empty ``GARM_CONTROLLER_ID`` and ``Name``.

        Returns:
            The first matching instance, in EC2's order.

        Raises:
            InvalidArgumentError: If either tag is missing or empty.
            NotFoundError: If no live instance matches.
            CloudAPIError: On API failure.
        """
        controller_id = tags.get(CONTROLLER_ID_TAG, "")
        name = tags.get(NAME_TAG, "")
        if not controller_id or not name:
            raise InvalidArgumentError(
                f"lookup needs both {CONTROLLER_ID_TAG} and {NAME_TAG}",
                operation="find_instance_by_tags",
            )

        logger.debug("Looking up instance %s for controller %s", name, controller_id)
        instances = self._describe(
            "find_instance_by_tags",
            "failed to find instances by tags",
            Filters=[
                {"Name": f"tag:{CONTROLLER_ID_TAG}", "Values": [controller_id]},
                {"Name": f"tag:{NAME_TAG}", "Values": [name]},
                {"Name": "instance-state-name", "Values": list(_LIVE_STATES)},
            ],
        )
        if not instances:
            raise NotFoundError(f"no instance named {name}", operation="find_instance_by_tags")
        if len(instances) > 1:
            logger.warning(
                "%d instances tagged %s for controller %s; using %s",
                len(instances), name, controller_id, instances[0].get("InstanceId"),
            )
        return instances[0]

    def list_described_instances(self, pool_id: str) -> List[Dict[str, Any]]:
        """Describe every instance tagged with *pool_id*.

        Returns:
            The instances, possibly empty.
        """
        return self._describe(
            "list_described_instances",
            f"failed to list instances for pool {pool_id}",
            Filters=[{"Name": f"tag:{POOL_ID_TAG}", "Values": [pool_id]}],
        )

    def start_instance(self, instance_id: str) -> None:
        """Ask EC2 to start an instance; returns once the request is accepted."""
        logger.info("Starting EC2 instance %s", instance_id)
        with _translate_errors("start_instance", f"failed to start instance {instance_id}"):
            self._ec2.start_instances(InstanceIds=[instance_id])

    def stop_instance(self, instance_id: str, force: bool = False) -> None:
        """Ask EC2 to stop an instance.

        Args:
            instance_id: Instance to stop.
            force: Skip the guest OS shutdown. File system caches are not
                flushed; not recommended for Windows.
        """
        logger.info("Stopping EC2 instance %s (force=%s)", instance_id, force)
        with _translate_errors("stop_instance", f"failed to stop instance {instance_id}"):
            self._ec2.stop_instances(InstanceIds=[instance_id], Force=force)

    def terminate_instance(self, instance_id: str) -> None:
        """Ask EC2 to terminate an instance. Irreversible; does not wait."""
        logger.info("Terminating EC2 instance %s", instance_id)
        with _translate_errors("terminate_instance", f"failed to terminate instance {instance_id}"):
            self._ec2.terminate_instances(InstanceIds=[instance_id])
