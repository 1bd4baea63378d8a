"""Runner tool catalog lookup."""

from __future__ import annotations

import logging
from typing import Dict, Iterable

from .errors import UnsupportedOSTypeError, UnsupportedPlatformError
from .params import OSArch, OSType, RunnerApplicationDownload

logger = logging.getLogger(__name__)

# The catalog uses the runner release naming, not ours.
_OS_NAMES: Dict[OSType, str] = {
    OSType.LINUX: "linux",
    OSType.WINDOWS: "win",
}

_ARCH_NAMES: Dict[OSArch, str] = {
    OSArch.AMD64: "x64",
    OSArch.ARM: "arm",
    OSArch.ARM64: "arm64",
}


def get_tools(
    os_type: OSType,
    os_arch: OSArch,
    tools: Iterable[RunnerApplicationDownload],
) -> RunnerApplicationDownload:
    """Pick the runner download matching an OS type and architecture.

    Args:
        os_type: Requested operating system.
        os_arch: Requested CPU architecture.
        tools: The orchestrator's tool catalog.

    Returns:
        The first catalog entry for that platform.

    Raises:
        UnsupportedOSTypeError: If the OS type is neither Linux nor Windows.
        UnsupportedPlatformError: If the architecture has no release name
            or the catalog has no entry for the platform.
    """
    os_name = _OS_NAMES.get(os_type)
    if os_name is None:
        raise UnsupportedOSTypeError(f"unsupported OS type: {os_type.value}", operation="get_tools")
    arch_name = _ARCH_NAMES.get(os_arch)
    if arch_name is None:
        raise UnsupportedPlatformError(f"unsupported OS architecture: {os_arch.value}", operation="get_tools")

    for tool in tools:
        if tool.os == os_name and tool.architecture == arch_name:
            logger.debug("Using runner tool %s for %s/%s", tool.filename, os_name, arch_name)
            return tool

    raise UnsupportedPlatformError(
        f"failed to find tools for OS {os_type.value} and arch {os_arch.value}",
        operation="get_tools",
    )
