"""
Pydantic models for the orchestrator's wire types.

These mirror the JSON GARM hands an external provider on stdin and
expects back on stdout.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OSType(str, Enum):
    """Operating system family of a runner."""

    LINUX = "linux"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class OSArch(str, Enum):
    """CPU architecture of a runner."""

    AMD64 = "amd64"
    I386 = "i386"
    ARM = "arm"
    ARM64 = "arm64"
    UNKNOWN = "unknown"


class InstanceStatus(str, Enum):
    """Provider-side status of an instance, as reported to the orchestrator."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def from_ec2_state(cls, state: Optional[str]) -> "InstanceStatus":
        """Map an EC2 ``State.Name`` onto a status.

        Args:
            state: EC2 state name (e.g. 'running', 'shutting-down').

        Returns:
            The matching status, or UNKNOWN for anything unrecognised.
        """
        try:
            return cls(state)
        except ValueError:
            return cls.UNKNOWN


class AddressType(str, Enum):
    """Visibility of an instance address."""

    PUBLIC = "public"
    PRIVATE = "private"


# ---------------------------------------------------------------------------
# Inbound: bootstrap request
# ---------------------------------------------------------------------------

class RunnerApplicationDownload(BaseModel):
    """One entry in the runner tool catalog."""

    model_config = ConfigDict(extra="ignore")

    os: Optional[str] = None
    architecture: Optional[str] = None
    download_url: Optional[str] = None
    filename: Optional[str] = None
    temp_download_token: Optional[str] = None
    sha256_checksum: Optional[str] = None


class BootstrapInstance(BaseModel):
    """Everything the orchestrator knows about the runner it wants created.

    GARM spells a handful of keys with dashes; they are exposed here
    under snake_case names and accepted under either spelling.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = ""
    tools: List[RunnerApplicationDownload] = Field(default_factory=list)
    repo_url: str = ""
    callback_url: str = Field(default="", alias="callback-url")
    metadata_url: str = Field(default="", alias="metadata-url")
    instance_token: str = Field(default="", alias="instance-token")
    ssh_keys: List[str] = Field(default_factory=list, alias="ssh-keys")
    extra_specs: Optional[Any] = None
    github_runner_group: str = Field(default="", alias="github-runner-group")
    ca_cert_bundle: Optional[str] = Field(default=None, alias="ca-cert-bundle")
    os_type: OSType = OSType.LINUX
    arch: OSArch = OSArch.AMD64
    flavor: str = ""
    image: str = ""
    labels: List[str] = Field(default_factory=list)
    pool_id: str = ""
    user_data_options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("os_type", mode="before")
    @classmethod
    def _lower_os_type(cls, v: Any) -> Any:
        # GARM has shipped both "Linux" and "linux" over the years.
        if not isinstance(v, str):
            return v
        v = v.lower()
        if v not in {t.value for t in OSType}:
            return OSType.UNKNOWN
        return v

    @field_validator("arch", mode="before")
    @classmethod
    def _lower_arch(cls, v: Any) -> Any:
        # Unsupported architectures are rejected at tool lookup, not here.
        if not isinstance(v, str):
            return v
        v = v.lower()
        if v not in {a.value for a in OSArch}:
            return OSArch.UNKNOWN
        return v

    @property
    def os_arch(self) -> OSArch:
        """Alias for ``arch``; the tag is called OSArch."""
        return self.arch


# ---------------------------------------------------------------------------
# Outbound: instance record
# ---------------------------------------------------------------------------

class Address(BaseModel):
    """A reachable address of an instance."""

    address: str
    type: AddressType = AddressType.PRIVATE


class ProviderInstance(BaseModel):
    """Normalized instance record returned to the orchestrator."""

    provider_id: str
    name: str = ""
    os_type: Optional[str] = None
    os_arch: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    addresses: List[Address] = Field(default_factory=list)
    status: InstanceStatus = InstanceStatus.UNKNOWN

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for the orchestrator, dropping unset optional fields."""
        return self.model_dump(mode="json", exclude_none=True)
