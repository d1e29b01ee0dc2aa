"""
Base classes, policy types and the backend interface for sandbox implementations.
"""

import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from .filesystem_policy import FilesystemPlan


class _PolicyModel(BaseModel):
    # camelCase aliases so JSON settings documents (allowedDomains, denyRead, ...) validate as-is
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class NetworkPolicy(_PolicyModel):
    """Domain allow/deny lists enforced by the filtering proxy."""

    allowed_domains: frozenset[str] = frozenset()
    denied_domains: frozenset[str] = frozenset()


class FilesystemPolicy(_PolicyModel):
    """Path patterns compiled into the bind-mount plan.

    Order matters: within each list, later patterns are mounted after earlier
    ones.
    """

    deny_read: tuple[str, ...] = ()
    allow_write: tuple[str, ...] = ()
    deny_write: tuple[str, ...] = ()


class SandboxPolicy(_PolicyModel):
    """Complete, already-validated sandbox policy."""

    network: NetworkPolicy = NetworkPolicy()
    filesystem: FilesystemPolicy = FilesystemPolicy()


class SandboxState(Enum):
    """Lifecycle state of a SandboxManager."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    TORN_DOWN = "torn_down"


@dataclass
class DependencyStatus:
    """Point-in-time snapshot of available enforcement primitives."""

    has_fs_isolation_tool: bool = False
    has_proxy_tool: bool = False
    has_seccomp_bpf: bool = False
    has_seccomp_apply_helper: bool = False


@dataclass
class DependencyCheckResult:
    """Errors block sandbox creation, warnings allow degraded operation."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SeccompOverridePaths:
    """Caller-supplied locations for the seccomp bytecode and apply helper."""

    bpf_path: Optional[str] = None
    apply_helper_path: Optional[str] = None


@dataclass
class SeccompArtifact:
    """A seccomp bytecode file plus the helper that installs it before exec."""

    bpf_path: str
    apply_helper_path: str
    # Only artifacts created by this process are ever deleted
    owned: bool = False
    workdir: Optional[str] = None


@dataclass
class ProxyEndpoint:
    """Where sandboxed traffic must be sent to reach the filtering proxy."""

    host: str
    port: int
    socket_path: Optional[str] = None


@dataclass
class WrapOptions:
    """Everything a backend needs to assemble one sandboxed command line."""

    plan: "FilesystemPlan"
    proxy: Optional[ProxyEndpoint] = None
    seccomp: Optional[SeccompArtifact] = None

    # Port the in-sandbox bridge listens on (Linux)
    bridge_port: int = 3128

    # Working directory for the command
    cwd: Optional[str] = None

    # Extra environment variables set inside the sandbox
    env: Optional[dict[str, str]] = None

    def __post_init__(self):
        """Initialize default values."""
        if self.env is None:
            self.env = {}


class SandboxBackend(ABC):
    """Capability set implemented once per platform."""

    #: Whether this backend can use a seccomp filter at all
    supports_seccomp = False

    @abstractmethod
    def get_platform(self) -> str:
        """Get the platform this backend supports."""
        pass

    @abstractmethod
    def check_dependencies(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyCheckResult:
        """Probe the host for required and optional enforcement tools."""
        pass

    @abstractmethod
    def get_dependency_status(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyStatus:
        """Report each enforcement primitive as an independent flag."""
        pass

    @abstractmethod
    def compile_filesystem(self, policy: FilesystemPolicy) -> "FilesystemPlan":
        """Turn filesystem rules into an ordered mount plan."""
        pass

    @abstractmethod
    def build_command(self, inner_command: str, options: WrapOptions) -> str:
        """
        Assemble the final command line.

        Args:
            inner_command: Shell command text executed inside the sandbox
            options: Compiled plan, proxy endpoint and filter artifact

        Returns:
            A single command string for /bin/sh
        """
        pass

    def is_available(self) -> bool:
        """Check if the isolation mechanism is usable on this system."""
        return self.check_dependencies().ok

    def acquire_filter(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> Optional[SeccompArtifact]:
        """Locate or generate a syscall filter. None means degraded mode."""
        return None

    def release_filter(self, artifact: Optional[SeccompArtifact]) -> None:
        """Delete filter files created by this process."""
        return None


def get_current_platform() -> str:
    """Get the current platform name."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    return system
