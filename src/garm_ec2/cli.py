"""
garm-provider-ec2 CLI — the external provider protocol.

GARM runs the provider as a process, once per operation. The operation
and its arguments arrive as environment variables; a bootstrap request
arrives as JSON on stdin; results leave as JSON on stdout. Diagnostics
go to stderr so they never corrupt the protocol stream.

Environment:
    GARM_COMMAND               CreateInstance, DeleteInstance, GetInstance,
                               ListInstances, StartInstance, StopInstance,
                               RemoveAllInstances, GetVersion
    GARM_CONTROLLER_ID         ID of the calling GARM installation
    GARM_POOL_ID               pool for ListInstances / CreateInstance
    GARM_INSTANCE_ID           instance ID or runner name
    GARM_PROVIDER_CONFIG_FILE  path to the provider config (TOML)

Entry point: garm_ec2.cli:main
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable, Dict

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from . import PROVIDER_CONFIG_ENV, __version__
from .errors import ErrorKind, InvalidArgumentError, InvalidSpecError, ProviderError
from .params import BootstrapInstance
from .provider import EC2Provider

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)

EXIT_CODE_ERROR = 1
EXIT_CODE_NOT_FOUND = 30

CREATE_INSTANCE = "CreateInstance"
DELETE_INSTANCE = "DeleteInstance"
GET_INSTANCE = "GetInstance"
LIST_INSTANCES = "ListInstances"
START_INSTANCE = "StartInstance"
STOP_INSTANCE = "StopInstance"
REMOVE_ALL_INSTANCES = "RemoveAllInstances"
GET_VERSION = "GetVersion"

COMMANDS = (
    CREATE_INSTANCE,
    DELETE_INSTANCE,
    GET_INSTANCE,
    LIST_INSTANCES,
    START_INSTANCE,
    STOP_INSTANCE,
    REMOVE_ALL_INSTANCES,
    GET_VERSION,
)


def exit_code_for(exc: ProviderError) -> int:
    """Map an error onto the exit code GARM branches on."""
    if exc.kind == ErrorKind.NOT_FOUND:
        return EXIT_CODE_NOT_FOUND
    return EXIT_CODE_ERROR


def _emit(payload: Any) -> None:
    """Write a JSON result to stdout."""
    click.echo(json.dumps(payload))


def _require(value: str, envvar: str, command: str) -> str:
    if not value:
        raise InvalidArgumentError(f"missing {envvar}", operation=command)
    return value


def _read_bootstrap(pool_id: str) -> BootstrapInstance:
    """Parse the bootstrap request GARM writes to stdin."""
    raw = click.get_text_stream("stdin").read()
    if not raw.strip():
        raise InvalidSpecError("no bootstrap params on stdin", operation=CREATE_INSTANCE)
    try:
        bootstrap = BootstrapInstance.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidSpecError(
            "failed to decode bootstrap params", operation=CREATE_INSTANCE, cause=exc,
        ) from exc
    if not bootstrap.pool_id and pool_id:
        bootstrap.pool_id = pool_id
    return bootstrap


def run_command(
    command: str,
    provider: EC2Provider,
    instance_id: str = "",
    pool_id: str = "",
    force: bool = False,
) -> None:
    """Execute one protocol command against *provider* and print its result.

    Raises:
        ProviderError: On any failure; the caller turns it into an exit code.
    """
    handlers: Dict[str, Callable[[], None]] = {
        CREATE_INSTANCE: lambda: _emit(
            provider.create_instance(_read_bootstrap(pool_id)).to_wire()
        ),
        GET_INSTANCE: lambda: _emit(
            provider.get_instance(_require(instance_id, "GARM_INSTANCE_ID", command)).to_wire()
        ),
        LIST_INSTANCES: lambda: _emit(
            [i.to_wire() for i in provider.list_instances(_require(pool_id, "GARM_POOL_ID", command))]
        ),
        DELETE_INSTANCE: lambda: provider.delete_instance(
            _require(instance_id, "GARM_INSTANCE_ID", command)
        ),
        START_INSTANCE: lambda: provider.start(
            _require(instance_id, "GARM_INSTANCE_ID", command)
        ),
        STOP_INSTANCE: lambda: provider.stop(
            _require(instance_id, "GARM_INSTANCE_ID", command), force=force,
        ),
        REMOVE_ALL_INSTANCES: provider.remove_all_instances,
    }
    handler = handlers.get(command)
    if handler is None:
        raise InvalidArgumentError(f"unknown command {command!r}", operation="run_command")
    logger.debug("Running %s (instance=%s pool=%s)", command, instance_id, pool_id)
    handler()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="garm-provider-ec2")
@click.option("--command", "command", envvar="GARM_COMMAND", default="",
              help="Operation to perform (GARM_COMMAND).")
@click.option("--controller-id", envvar="GARM_CONTROLLER_ID", default="",
              help="Calling controller ID (GARM_CONTROLLER_ID).")
@click.option("--config", "config_path", envvar=PROVIDER_CONFIG_ENV, default="",
              type=click.Path(dir_okay=False), help="Provider config file.")
@click.option("--instance-id", envvar="GARM_INSTANCE_ID", default="",
              help="Instance ID or runner name (GARM_INSTANCE_ID).")
@click.option("--pool-id", envvar="GARM_POOL_ID", default="",
              help="Pool ID (GARM_POOL_ID).")
@click.option("--force/--no-force", default=False,
              help="Force-stop without a guest shutdown (StopInstance).")
@click.option("--log-level", envvar="GARM_EC2_LOG_LEVEL", default="WARNING",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(
    command: str,
    controller_id: str,
    config_path: str,
    instance_id: str,
    pool_id: str,
    force: bool,
    log_level: str,
) -> None:
    """GARM external provider for ephemeral EC2 runners."""
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if command == GET_VERSION:
        click.echo(__version__)
        return

    try:
        if command not in COMMANDS:
            raise InvalidArgumentError(
                f"unknown command {command!r}; expected one of {', '.join(COMMANDS)}",
                operation="main",
            )
        _require(controller_id, "GARM_CONTROLLER_ID", command)
        _require(config_path, PROVIDER_CONFIG_ENV, command)
        provider = EC2Provider.from_config_file(config_path, controller_id)
        run_command(command, provider, instance_id=instance_id, pool_id=pool_id, force=force)
    except ProviderError as exc:
        err_console.print(f"[bold red]error:[/] {escape(str(exc))}", highlight=False, soft_wrap=True)
        sys.exit(exit_code_for(exc))
