"""
Linux sandbox backend using bubblewrap (bwrap), socat and seccomp.
"""

import shlex
from typing import Optional

from . import dependencies, seccomp
from .base import (
    DependencyCheckResult,
    DependencyStatus,
    FilesystemPolicy,
    SandboxBackend,
    SeccompArtifact,
    SeccompOverridePaths,
    WrapOptions,
)
from .filesystem_policy import FilesystemPlan, compile_filesystem
from .network import proxy_environment


def bridge_command(bridge_port: int, socket_path: str) -> list[str]:
    """socat relay from loopback inside the sandbox to the proxy's unix socket."""
    return [
        "socat",
        f"TCP-LISTEN:{bridge_port},fork,reuseaddr,bind=127.0.0.1",
        f"UNIX-CONNECT:{socket_path}",
    ]


def _quote_all(args: list[str]) -> str:
    return " ".join(shlex.quote(arg) for arg in args)


class BubblewrapBackend(SandboxBackend):
    """Filesystem and network isolation using bubblewrap on Linux."""

    supports_seccomp = True

    def get_platform(self) -> str:
        """Get the platform this backend supports."""
        return "linux"

    def check_dependencies(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyCheckResult:
        return dependencies.check_linux_dependencies(override_paths)

    def get_dependency_status(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyStatus:
        return dependencies.get_linux_dependency_status(override_paths)

    def compile_filesystem(self, policy: FilesystemPolicy) -> FilesystemPlan:
        return compile_filesystem(policy)

    def acquire_filter(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> Optional[SeccompArtifact]:
        return seccomp.acquire_filter(override_paths)

    def release_filter(self, artifact: Optional[SeccompArtifact]) -> None:
        seccomp.release_filter(artifact)

    def build_command(self, inner_command: str, options: WrapOptions) -> str:
        """
        Wrap a command with bubblewrap isolation.

        The sandbox gets its own network namespace. Its only way out is the
        socat bridge to the filtering proxy's unix socket, started before
        the seccomp helper so the filter never applies to the bridge itself.

        Args:
            inner_command: Shell command text to run inside the sandbox
            options: Compiled plan, proxy endpoint and seccomp artifact

        Returns:
            The bwrap invocation as one shell-quoted string
        """
        bwrap_args = ["bwrap"]

        # Core isolation settings
        bwrap_args.extend([
            "--new-session",  # New session to avoid signal leakage
            "--die-with-parent",  # Kill sandbox when parent dies
            "--unshare-net",  # No network except through the proxy bridge
            "--unshare-pid",
        ])

        # Baseline: whole host read-only
        bwrap_args.extend([
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
        ])

        bwrap_args.extend(options.plan.to_bwrap_args())

        env_vars = dict(options.env)
        script = []

        proxy = options.proxy
        if proxy and proxy.socket_path:
            bwrap_args.extend(["--bind", proxy.socket_path, proxy.socket_path])
            env_vars.update(proxy_environment(f"http://127.0.0.1:{options.bridge_port}"))
            script.append(
                _quote_all(bridge_command(options.bridge_port, proxy.socket_path))
                + " >/dev/null 2>&1 &"
            )

        target = ["/bin/sh", "-c", inner_command]
        if options.seccomp:
            artifact = options.seccomp
            # Keep the filter reachable even if a deny_read rule covers its directory
            for path in (artifact.bpf_path, artifact.apply_helper_path):
                bwrap_args.extend(["--ro-bind", path, path])
            target = [artifact.apply_helper_path, artifact.bpf_path] + target

        # Binds above may need mount points inside a mask, so seal masks last
        bwrap_args.extend(options.plan.remount_args())

        for var, value in env_vars.items():
            bwrap_args.extend(["--setenv", var, value])

        if options.cwd:
            bwrap_args.extend(["--chdir", options.cwd])

        script.append("exec " + _quote_all(target))

        bwrap_args.extend([
            "--",
            "/bin/sh",
            "-c",
            " ".join(script),
        ])

        return _quote_all(bwrap_args)
