"""
Runner spec — the fully-resolved description of one instance to launch.

A RunnerSpec is built from three things: the static provider config, the
orchestrator's bootstrap request, and the controller ID. Building it
resolves the runner tool for the platform, folds in any ``extra_specs``
overrides, and renders the user-data. Once the user-data is set the spec
is sealed; nothing about it changes afterwards.

Extra specs are decoded tolerantly: unknown keys are ignored so that pools
configured for newer provider versions keep working on older ones.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
)

from .cloudconfig import get_cloud_config
from .config import Config
from .errors import EmptyUserDataError, InvalidArgumentError, InvalidSpecError, ProviderError
from .params import BootstrapInstance, RunnerApplicationDownload
from .tools import get_tools

logger = logging.getLogger(__name__)

DEFAULT_MIN_COUNT = 1
DEFAULT_MAX_COUNT = 1


# ---------------------------------------------------------------------------
# Extra specs
# ---------------------------------------------------------------------------

class ExtraSpecs(BaseModel):
    """Pool-level overrides carried in the bootstrap ``extra_specs`` blob.

    Keys are accepted in snake_case or in the CamelCase spelling older
    pool definitions use.
    """

    model_config = ConfigDict(extra="ignore")

    min_count: int = Field(default=0, validation_alias=AliasChoices("min_count", "MinCount"))
    max_count: int = Field(default=0, validation_alias=AliasChoices("max_count", "MaxCount"))
    subnet_id: str = Field(
        default="",
        validation_alias=AliasChoices("subnet_id", "SubnetID", "SubnetId"),
    )
    open_inbound_ports: Dict[str, List[int]] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("open_inbound_ports", "OpenInboundPorts"),
    )
    block_device_mapping: str = Field(
        default="",
        validation_alias=AliasChoices("block_device_mapping", "BlockDeviceMapping"),
    )

    @field_validator("block_device_mapping", mode="before")
    @classmethod
    def _mapping_as_json(cls, v: Any) -> Any:
        # Accept the mapping inline as well as pre-encoded.
        if isinstance(v, (list, dict)):
            return json.dumps(v)
        return v

    @classmethod
    def from_bootstrap(cls, data: BootstrapInstance) -> "ExtraSpecs":
        """Decode the extra specs of a bootstrap request.

        Args:
            data: The bootstrap request.

        Returns:
            ExtraSpecs: Decoded overrides (all defaults if none were given).

        Raises:
            InvalidSpecError: If the blob is not valid JSON, not an object,
                or holds values of the wrong type.
        """
        raw = data.extra_specs
        if raw is None or raw == "" or raw == {}:
            return cls()

        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise InvalidSpecError(
                    "failed to unmarshal extra specs", operation="load_extra_specs", cause=exc,
                ) from exc

        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidSpecError(
                f"extra specs must be a JSON object, got {type(raw).__name__}",
                operation="load_extra_specs",
            )

        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise InvalidSpecError(
                "failed to unmarshal extra specs", operation="load_extra_specs", cause=exc,
            ) from exc


# ---------------------------------------------------------------------------
# Runner spec
# ---------------------------------------------------------------------------

class RunnerSpec(BaseModel):
    """Everything needed to launch one runner instance."""

    model_config = ConfigDict(validate_assignment=True)

    region: str
    controller_id: str = ""
    tools: RunnerApplicationDownload
    bootstrap_params: BootstrapInstance
    user_data: str = ""
    min_count: int = Field(default=DEFAULT_MIN_COUNT, ge=1)
    max_count: int = Field(default=DEFAULT_MAX_COUNT, ge=1)
    subnet_id: str = ""
    open_inbound_ports: Dict[str, List[int]] = Field(default_factory=dict)
    block_device_mapping: str = ""

    _sealed: bool = PrivateAttr(default=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in type(self).model_fields and getattr(self, "_sealed", False):
            raise InvalidArgumentError(
                f"cannot set {name}: runner spec is sealed once user data is set",
                operation="runner_spec",
            )
        super().__setattr__(name, value)

    @property
    def image(self) -> str:
        """AMI to launch."""
        return self.bootstrap_params.image

    @property
    def flavor(self) -> str:
        """EC2 instance type to launch."""
        return self.bootstrap_params.flavor

    @property
    def sealed(self) -> bool:
        """True once user-data has been set."""
        return self._sealed

    def _ensure_mutable(self, operation: str) -> None:
        if self._sealed:
            raise InvalidArgumentError("runner spec is sealed once user data is set", operation=operation)

    def validate_spec(self) -> None:
        """Check everything a launch depends on.

        Raises:
            InvalidSpecError: On a missing region or bootstrap name, bad
                counts, or empty user-data.
        """
        if not self.region:
            raise InvalidSpecError("missing region", operation="validate_spec")
        if not self.bootstrap_params.name:
            raise InvalidSpecError("missing bootstrap params", operation="validate_spec")
        if self.min_count > self.max_count:
            raise InvalidSpecError(
                f"min_count ({self.min_count}) exceeds max_count ({self.max_count})",
                operation="validate_spec",
            )
        if not self.user_data:
            raise InvalidSpecError("missing user data", operation="validate_spec")

    def merge_extra_specs(self, extra: ExtraSpecs) -> None:
        """Fold pool overrides into the spec.

        Counts only ever widen: an override of 1 or less leaves the default
        in place. If the merged minimum exceeds the maximum, the maximum is
        raised to match.
        """
        self._ensure_mutable("merge_extra_specs")
        if extra.min_count > DEFAULT_MIN_COUNT:
            self.min_count = extra.min_count
        if extra.max_count > DEFAULT_MAX_COUNT:
            self.max_count = extra.max_count
        if self.min_count > self.max_count:
            self.max_count = self.min_count
        if extra.subnet_id:
            self.subnet_id = extra.subnet_id
        if extra.open_inbound_ports:
            self.open_inbound_ports = dict(extra.open_inbound_ports)
        if extra.block_device_mapping:
            self.block_device_mapping = extra.block_device_mapping

    def compose_user_data(self) -> bytes:
        """Render the raw (unencoded) user-data for this runner.

        Raises:
            UnsupportedOSTypeError: For OS types with no generator.
        """
        udata = get_cloud_config(self.bootstrap_params, self.tools, self.bootstrap_params.name)
        return udata.encode("utf-8")

    def set_user_data(self) -> None:
        """Compose, base64-encode and store the user-data, then seal the spec.

        Raises:
            UnsupportedOSTypeError: For OS types with no generator.
            EmptyUserDataError: If the generator produced nothing.
            InvalidArgumentError: If user-data was already set.
        """
        self._ensure_mutable("set_user_data")
        try:
            custom_data = self.compose_user_data()
        except ProviderError as exc:
            raise exc.wrap("set_user_data", "failed to compose userdata") from exc

        if not custom_data:
            raise EmptyUserDataError("failed to generate custom data", operation="set_user_data")

        self.user_data = base64.b64encode(custom_data).decode("ascii")
        self._sealed = True

    def security_rules(self) -> List[Dict[str, Any]]:
        """Ingress rules for the open inbound ports, in EC2 ``IpPermissions`` form."""
        rules: List[Dict[str, Any]] = []
        for proto in sorted(self.open_inbound_ports):
            for port in self.open_inbound_ports[proto]:
                rules.append({
                    "IpProtocol": proto,
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{
                        "CidrIp": "0.0.0.0/0",
                        "Description": f"open inbound {proto} port {port}",
                    }],
                })
        return rules

    def block_device_mappings(self) -> List[Dict[str, Any]]:
        """Decode the block-device-mapping override.

        Returns:
            The mappings as EC2 ``BlockDeviceMappings`` dicts, or an empty
            list when unset or undecodable.
        """
        if not self.block_device_mapping:
            return []
        try:
            mappings = json.loads(self.block_device_mapping)
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable block device mapping for %s", self.bootstrap_params.name)
            return []
        if isinstance(mappings, dict):
            mappings = [mappings]
        if not isinstance(mappings, list) or not all(isinstance(m, dict) for m in mappings):
            logger.warning("Ignoring malformed block device mapping for %s", self.bootstrap_params.name)
            return []
        return mappings


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def get_runner_spec_from_bootstrap_params(
    config: Config,
    data: BootstrapInstance,
    controller_id: str,
) -> RunnerSpec:
    """Build a validated RunnerSpec from a bootstrap request.

    Args:
        config: Static provider configuration.
        data: The orchestrator's bootstrap request.
        controller_id: ID of the calling orchestrator installation.

    Returns:
        RunnerSpec: A sealed spec ready to launch.

    Raises:
        UnsupportedPlatformError: If no runner tool matches the platform.
        InvalidSpecError: On malformed extra specs or failed validation.
        UnsupportedOSTypeError: If the OS type has no user-data generator.
        EmptyUserDataError: If the generator produced nothing.
    """
    try:
        tools = get_tools(data.os_type, data.arch, data.tools)
    except ProviderError as exc:
        raise exc.wrap("build_runner_spec", "failed to get tools") from exc

    try:
        extra = ExtraSpecs.from_bootstrap(data)
    except ProviderError as exc:
        raise exc.wrap("build_runner_spec", "error loading extra specs") from exc

    spec = RunnerSpec(
        region=config.region,
        controller_id=controller_id,
        tools=tools.model_copy(deep=True),
        bootstrap_params=data.model_copy(deep=True),
        min_count=DEFAULT_MIN_COUNT,
        max_count=DEFAULT_MAX_COUNT,
        subnet_id=config.subnet_id,
    )

    spec.merge_extra_specs(extra)

    try:
        spec.set_user_data()
        spec.validate_spec()
    except ProviderError as exc:
        raise exc.wrap("build_runner_spec", "invalid runner spec") from exc

    logger.debug(
        "Built runner spec for %s (pool=%s image=%s flavor=%s)",
        data.name, data.pool_id, spec.image, spec.flavor,
    )
    return spec
