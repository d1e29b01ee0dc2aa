"""
Factory for creating platform-specific sandbox backends.
"""

from typing import Optional

from .base import (
    DependencyCheckResult,
    DependencyStatus,
    FilesystemPolicy,
    SandboxBackend,
    SeccompOverridePaths,
    WrapOptions,
    get_current_platform,
)
from .errors import SandboxError
from .filesystem_policy import FilesystemPlan, compile_filesystem
from .linux_isolator import BubblewrapBackend
from .macos_isolator import SandboxExecBackend


class UnsupportedBackend(SandboxBackend):
    """Backend for platforms without sandboxing. Always reports an error."""

    def __init__(self, platform: str):
        self.platform = platform

    def get_platform(self) -> str:
        return self.platform

    def check_dependencies(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyCheckResult:
        return DependencyCheckResult(
            errors=[f"sandboxing is not supported on platform {self.platform}"]
        )

    def get_dependency_status(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyStatus:
        return DependencyStatus()

    def compile_filesystem(self, policy: FilesystemPolicy) -> FilesystemPlan:
        return compile_filesystem(policy)

    def build_command(self, inner_command: str, options: WrapOptions) -> str:
        raise SandboxError(f"sandboxing is not supported on platform {self.platform}")


def get_sandbox_backend(platform: Optional[str] = None) -> SandboxBackend:
    """
    Get the sandbox backend for the current platform.

    Args:
        platform: Override platform detection (mainly for testing)

    Returns:
        SandboxBackend instance for the platform
    """
    if platform is None:
        platform = get_current_platform()

    backends = [
        BubblewrapBackend(),
        SandboxExecBackend(),
    ]

    for backend in backends:
        if backend.get_platform() == platform:
            return backend

    return UnsupportedBackend(platform)
