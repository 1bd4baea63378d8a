"""
Provider configuration — region, network defaults and credentials.

The file is TOML, matching the rest of the GARM provider family:

.. code-block:: toml

    region = "eu-central-1"
    subnet_id = "subnet-0123456789abcdef0"
    security_group_ids = ["sg-0123456789abcdef0"]

    [credentials]
    access_key_id = "AKIA..."
    secret_access_key = "..."
    session_token = "..."

A YAML file with the same keys is accepted too. Validation fails closed:
an empty region or any empty credential field rejects the whole file.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)


class Credentials(BaseModel):
    """Static AWS credentials."""

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""

    def validate_fields(self) -> None:
        """Reject empty credential material.

        Raises:
            ConfigError: If any of the three fields is empty.
        """
        for field in ("access_key_id", "secret_access_key", "session_token"):
            if not getattr(self, field):
                raise ConfigError(f"missing {field}", operation="validate_credentials")


class Timeouts(BaseModel):
    """Transport timeouts handed to botocore, in seconds."""

    connect: float = Field(default=10, gt=0)
    read: float = Field(default=60, gt=0)


class Config(BaseModel):
    """Static provider configuration, loaded once per invocation."""

    region: str = ""
    subnet_id: str = Field(
        default="",
        description="Default network identifier runners are launched into",
    )
    security_group_ids: List[str] = Field(default_factory=list)
    key_name: Optional[str] = Field(default=None, description="EC2 key pair name")
    credentials: Credentials = Field(default_factory=Credentials)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    max_attempts: int = Field(
        default=1, ge=1, le=10,
        description="botocore attempts per call; 1 leaves retries to the caller",
    )

    @field_validator("region", "subnet_id", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    def validate_config(self) -> None:
        """Check the fields pydantic cannot express as types.

        Raises:
            ConfigError: If the region or any credential field is empty.
        """
        if not self.region:
            raise ConfigError("missing region", operation="validate_config")
        try:
            self.credentials.validate_fields()
        except ConfigError as exc:
            raise exc.wrap("validate_config", "failed to validate credentials") from exc

    def session_kwargs(self) -> Dict[str, str]:
        """Keyword arguments for ``boto3.session.Session``."""
        return {
            "aws_access_key_id": self.credentials.access_key_id,
            "aws_secret_access_key": self.credentials.secret_access_key,
            "aws_session_token": self.credentials.session_token,
            "region_name": self.region,
        }


def _read_raw(path: Path) -> Any:
    """Parse *path* as TOML or YAML depending on its suffix."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(text) or {}
    return tomllib.loads(text)


def load_config(path: str | Path) -> Config:
    """Load and validate the provider configuration file.

    Args:
        path: Filesystem path to a TOML (or YAML) config file.

    Returns:
        Config: The validated configuration.

    Raises:
        ConfigError: If the file is missing, cannot be parsed, or fails
            validation.
    """
    path = Path(path).expanduser()
    try:
        raw = _read_raw(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file {path} not found", operation="load_config", cause=exc) from exc
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigError("error decoding config", operation="load_config", cause=exc) from exc

    if not isinstance(raw, dict):
        raise ConfigError("config must be a table of settings", operation="load_config")

    try:
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError("error decoding config", operation="load_config", cause=exc) from exc

    try:
        config.validate_config()
    except ConfigError as exc:
        raise exc.wrap("load_config", "error validating config") from exc

    logger.debug("Loaded provider config from %s (region=%s)", path, config.region)
    return config
