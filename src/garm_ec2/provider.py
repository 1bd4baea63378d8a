"""
EC2 Provider — the operations the orchestrator calls.

Maps GARM's lifecycle verbs onto the EC2 client and turns raw
``describe_instances`` output into ProviderInstance records. The
orchestrator may address an instance either by its EC2 ID or by the
runner name it chose; names are resolved through the instance tags,
always scoped to this controller.

Delete is idempotent: an instance that cannot be found is already gone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .client import (
    CONTROLLER_ID_TAG,
    NAME_TAG,
    OS_ARCH_TAG,
    OS_TYPE_TAG,
    EC2Client,
    instance_tags,
    is_instance_id,
)
from .config import Config, load_config
from .errors import InvalidArgumentError, NotFoundError, ProviderError
from .params import (
    Address,
    AddressType,
    BootstrapInstance,
    InstanceStatus,
    ProviderInstance,
)
from .spec import get_runner_spec_from_bootstrap_params

logger = logging.getLogger(__name__)

# EC2 Architecture -> GARM OSArch
_EC2_ARCHITECTURES: Dict[str, str] = {
    "x86_64": "amd64",
    "x86_64_mac": "amd64",
    "arm64": "arm64",
    "arm64_mac": "arm64",
    "i386": "i386",
}


def ec2_instance_to_provider_instance(instance: Dict[str, Any]) -> ProviderInstance:
    """Convert one ``describe_instances`` entry into an instance record.

    Platform fields come from the OSType/OSArch tags this provider sets at
    launch; instances without them fall back to what EC2 reports.

    Args:
        instance: An element of ``Reservations[].Instances[]``.

    Returns:
        ProviderInstance: The normalized record.
    """
    tags = instance_tags(instance)

    os_type = tags.get(OS_TYPE_TAG)
    if not os_type:
        os_type = "windows" if instance.get("Platform") == "windows" else "linux"

    os_arch = tags.get(OS_ARCH_TAG) or _EC2_ARCHITECTURES.get(instance.get("Architecture", ""))

    addresses: List[Address] = []
    if instance.get("PublicIpAddress"):
        addresses.append(Address(address=instance["PublicIpAddress"], type=AddressType.PUBLIC))
    if instance.get("PrivateIpAddress"):
        addresses.append(Address(address=instance["PrivateIpAddress"], type=AddressType.PRIVATE))

    state = instance.get("State", {}).get("Name")

    return ProviderInstance(
        provider_id=instance.get("InstanceId", ""),
        name=tags.get(NAME_TAG, ""),
        os_type=os_type,
        os_arch=os_arch,
        os_name=instance.get("PlatformDetails"),
        addresses=addresses,
        status=InstanceStatus.from_ec2_state(state),
    )


class EC2Provider:
    """GARM external provider backed by EC2.

    Args:
        config: Validated provider configuration.
        controller_id: ID of the calling orchestrator installation. Every
            instance is tagged with it and every name lookup is scoped to it.
        client: EC2 client to use; built from *config* when omitted.
    """

    def __init__(
        self,
        config: Config,
        controller_id: str,
        client: Optional[EC2Client] = None,
    ) -> None:
        if not controller_id:
            raise InvalidArgumentError("missing controller ID", operation="new_provider")
        self._config = config
        self._controller_id = controller_id
        self._client = client or EC2Client(config)

    @classmethod
    def from_config_file(cls, config_path: str | Path, controller_id: str) -> "EC2Provider":
        """Load the config file and build a provider from it.

        Raises:
            ConfigError: If the config cannot be loaded or validated.
            InvalidArgumentError: If *controller_id* is empty.
        """
        try:
            config = load_config(config_path)
        except ProviderError as exc:
            raise exc.wrap("new_provider", "error loading config") from exc
        return cls(config, controller_id)

    @property
    def controller_id(self) -> str:
        return self._controller_id

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def _resolve_instance_id(self, identifier: str, operation: str) -> str:
        """Return the EC2 ID for an ID or a runner name.

        Raises:
            NotFoundError: If a name matches no live instance.
        """
        if is_instance_id(identifier):
            return identifier
        try:
            instance = self._client.find_instance_by_tags({
                CONTROLLER_ID_TAG: self._controller_id,
                NAME_TAG: identifier,
            })
        except ProviderError as exc:
            raise exc.wrap(operation, "failed to determine instance") from exc
        return instance["InstanceId"]

    # ------------------------------------------------------------------
    # Inbound contract
    # ------------------------------------------------------------------

    def create_instance(self, bootstrap_params: BootstrapInstance) -> ProviderInstance:
        """Build a runner spec and launch it.

        Returns:
            ProviderInstance: Record of the new instance, status ``running``.
        """
        try:
            spec = get_runner_spec_from_bootstrap_params(
                self._config, bootstrap_params, self._controller_id,
            )
        except ProviderError as exc:
            raise exc.wrap("create_instance", "failed to get runner spec") from exc

        try:
            instance_id = self._client.create_running_instance(spec)
        except ProviderError as exc:
            raise exc.wrap("create_instance", "failed to create instance") from exc

        return ProviderInstance(
            provider_id=instance_id,
            name=spec.bootstrap_params.name,
            os_type=spec.bootstrap_params.os_type.value,
            os_arch=spec.bootstrap_params.arch.value,
            status=InstanceStatus.RUNNING,
        )

    def delete_instance(self, identifier: str) -> None:
        """Terminate an instance by ID or runner name.

        Succeeds without doing anything when the instance cannot be found.
        """
        try:
            instance_id = self._resolve_instance_id(identifier, "delete_instance")
        except NotFoundError:
            logger.warning("Instance %s not found; nothing to delete", identifier)
            return

        try:
            self._client.terminate_instance(instance_id)
        except NotFoundError:
            logger.warning("Instance %s already gone; nothing to delete", instance_id)
        except ProviderError as exc:
            raise exc.wrap("delete_instance", "failed to terminate instance") from exc

    def get_instance(self, identifier: str) -> ProviderInstance:
        """Describe an instance by ID or runner name.

        Raises:
            NotFoundError: If no such instance exists.
        """
        try:
            if is_instance_id(identifier):
                instance = self._client.get_instance(identifier)
            else:
                instance = self._client.find_instance_by_tags({
                    CONTROLLER_ID_TAG: self._controller_id,
                    NAME_TAG: identifier,
                })
        except ProviderError as exc:
            raise exc.wrap("get_instance", "failed to get VM details") from exc
        return ec2_instance_to_provider_instance(instance)

    def list_instances(self, pool_id: str) -> List[ProviderInstance]:
        """List the instances of one pool (empty if there are none)."""
        try:
            instances = self._client.list_described_instances(pool_id)
        except ProviderError as exc:
            raise exc.wrap("list_instances", "failed to list instances") from exc
        return [ec2_instance_to_provider_instance(i) for i in instances]

    def remove_all_instances(self) -> None:
        """Bulk teardown is left to per-instance deletes; does nothing."""
        logger.debug("remove_all_instances is a no-op for this provider")

    def stop(self, identifier: str, force: bool = False) -> None:
        """Request that an instance stop."""
        instance_id = self._resolve_instance_id(identifier, "stop")
        try:
            self._client.stop_instance(instance_id, force=force)
        except ProviderError as exc:
            raise exc.wrap("stop", "failed to stop instance") from exc

    def start(self, identifier: str) -> None:
        """Request that an instance start."""
        instance_id = self._resolve_instance_id(identifier, "start")
        try:
            self._client.start_instance(instance_id)
        except ProviderError as exc:
            raise exc.wrap("start", "failed to start instance") from exc
