"""
Sandbox runtime: wrap arbitrary commands with filesystem and network
confinement, without containers.

Supports:
- Linux: bubblewrap (bwrap) for filesystem isolation, a network namespace
  bridged to a domain-filtering proxy with socat, and a seccomp filter that
  blocks unix-socket creation
- macOS: sandbox-exec profiles with the same filesystem rules, outbound
  network limited to the filtering proxy
- All platforms: live reconfiguration of the proxy's domain rules
"""

from .base import (
    DependencyCheckResult,
    DependencyStatus,
    FilesystemPolicy,
    NetworkPolicy,
    SandboxPolicy,
    SandboxState,
    SeccompArtifact,
    SeccompOverridePaths,
)
from .backends import get_sandbox_backend
from .config import RuntimeSettings
from .dependencies import check_dependencies, get_dependency_status
from .diagnostics import print_dependency_report, render_dependency_report
from .errors import (
    DependenciesUnavailable,
    FilterGenerationFailed,
    InvalidMountPattern,
    NotInitialized,
    ProxyStartFailed,
    SandboxError,
)
from .manager import SandboxManager

__version__ = "0.1.0"

__all__ = [
    "SandboxManager",
    "SandboxPolicy",
    "NetworkPolicy",
    "FilesystemPolicy",
    "SandboxState",
    "RuntimeSettings",
    "DependencyCheckResult",
    "DependencyStatus",
    "SeccompArtifact",
    "SeccompOverridePaths",
    "check_dependencies",
    "get_dependency_status",
    "get_sandbox_backend",
    "print_dependency_report",
    "render_dependency_report",
    "SandboxError",
    "DependenciesUnavailable",
    "ProxyStartFailed",
    "NotInitialized",
    "InvalidMountPattern",
    "FilterGenerationFailed",
]
