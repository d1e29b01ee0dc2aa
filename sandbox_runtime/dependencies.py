"""
Host capability probing for the Linux backend.

Every check runs on every call: results are never cached, so a probe always
reflects the host as it is now (and may differ between calls if the host
changes in between).
"""

import logging
import shutil
from typing import Optional

from .base import DependencyCheckResult, DependencyStatus, SeccompOverridePaths
from . import seccomp

logger = logging.getLogger(__name__)

FS_ISOLATION_TOOL = "bwrap"
PROXY_TOOL = "socat"

BWRAP_MISSING = "bubblewrap (bwrap) not installed"
SOCAT_MISSING = "socat not installed"
SECCOMP_MISSING = "seccomp not available - unix socket access not restricted"


def has_command(name: str) -> bool:
    """Check whether an executable is on PATH."""
    return shutil.which(name) is not None


def get_linux_dependency_status(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> DependencyStatus:
    """Report each primitive independently of the others."""
    return DependencyStatus(
        has_fs_isolation_tool=has_command(FS_ISOLATION_TOOL),
        has_proxy_tool=has_command(PROXY_TOOL),
        has_seccomp_bpf=seccomp.has_seccomp_bpf(override_paths),
        has_seccomp_apply_helper=seccomp.get_apply_helper_path(override_paths) is not None,
    )


def check_linux_dependencies(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> DependencyCheckResult:
    """
    Classify missing primitives.

    Missing bwrap or socat makes isolation impossible (errors). A missing
    seccomp program or helper only weakens it (one warning).
    """
    status = get_linux_dependency_status(override_paths)
    result = DependencyCheckResult()

    if not status.has_fs_isolation_tool:
        result.errors.append(BWRAP_MISSING)
    if not status.has_proxy_tool:
        result.errors.append(SOCAT_MISSING)
    if not (status.has_seccomp_bpf and status.has_seccomp_apply_helper):
        result.warnings.append(SECCOMP_MISSING)

    for error in result.errors:
        logger.debug(f"Dependency error: {error}")
    for warning in result.warnings:
        logger.debug(f"Dependency warning: {warning}")
    return result


def check_dependencies(
    override_paths: Optional[SeccompOverridePaths] = None,
    platform: Optional[str] = None,
) -> DependencyCheckResult:
    """Preflight check for the backend of the current (or given) platform."""
    from .backends import get_sandbox_backend

    return get_sandbox_backend(platform).check_dependencies(override_paths)


def get_dependency_status(
    override_paths: Optional[SeccompOverridePaths] = None,
    platform: Optional[str] = None,
) -> DependencyStatus:
    """Capability flags for the backend of the current (or given) platform."""
    from .backends import get_sandbox_backend

    return get_sandbox_backend(platform).get_dependency_status(override_paths)
