"""
macOS sandbox backend using sandbox-exec.
"""

import shlex
import shutil
from typing import Optional

from .base import (
    DependencyCheckResult,
    DependencyStatus,
    FilesystemPolicy,
    SandboxBackend,
    SeccompOverridePaths,
    WrapOptions,
)
from .filesystem_policy import MASK, READ_WRITE, FilesystemPlan, compile_filesystem
from .network import proxy_environment

SANDBOX_EXEC_MISSING = "sandbox-exec not available"


def _sbpl_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class SandboxExecBackend(SandboxBackend):
    """Filesystem and network isolation using sandbox-exec on macOS."""

    def get_platform(self) -> str:
        """Get the platform this backend supports."""
        return "macos"

    def get_dependency_status(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyStatus:
        # The proxy is reached over loopback directly; no bridge tool needed
        return DependencyStatus(
            has_fs_isolation_tool=shutil.which("sandbox-exec") is not None,
            has_proxy_tool=True,
        )

    def check_dependencies(
        self, override_paths: Optional[SeccompOverridePaths] = None
    ) -> DependencyCheckResult:
        result = DependencyCheckResult()
        if not self.get_dependency_status(override_paths).has_fs_isolation_tool:
            result.errors.append(SANDBOX_EXEC_MISSING)
        return result

    def compile_filesystem(self, policy: FilesystemPolicy) -> FilesystemPlan:
        return compile_filesystem(policy)

    def _generate_sandbox_profile(self, options: WrapOptions) -> str:
        """
        Generate a sandbox profile in Scheme for sandbox-exec.

        Rules are emitted in plan order (ancestors first); sandbox-exec lets
        the last matching rule win, which gives the same precedence as the
        bubblewrap mount order.
        """
        profile = """(version 1)
(allow default)

;; Baseline: nothing is writable
(deny file-write*)
(allow file-write-data
    (literal "/dev/null")
    (literal "/dev/zero")
    (literal "/dev/tty")
)

"""
        for directive in options.plan.directives:
            matcher = "subpath" if directive.is_dir else "literal"
            target = f"({matcher} {_sbpl_string(directive.path)})"
            if directive.kind == MASK:
                profile += f"(deny file-read* {target})\n"
            elif directive.kind == READ_WRITE:
                profile += f"(allow file-read* file-write* {target})\n"
            else:
                profile += f"(allow file-read* {target})\n(deny file-write* {target})\n"

        profile += "\n;; Outbound network only through the filtering proxy\n"
        profile += "(deny network-outbound)\n"
        if options.proxy:
            profile += f'(allow network-outbound (remote ip "localhost:{options.proxy.port}"))\n'

        return profile

    def build_command(self, inner_command: str, options: WrapOptions) -> str:
        """
        Wrap a command with sandbox-exec isolation.

        The profile is passed inline, so nothing is left on disk.
        """
        profile = self._generate_sandbox_profile(options)

        env_vars = dict(options.env)
        if options.proxy:
            env_vars.update(
                proxy_environment(f"http://{options.proxy.host}:{options.proxy.port}")
            )

        sandbox_args = ["sandbox-exec", "-p", profile, "env"]
        sandbox_args.extend(f"{var}={value}" for var, value in env_vars.items())
        sandbox_args.extend(["/bin/sh", "-c", inner_command])

        wrapped_command = " ".join(shlex.quote(arg) for arg in sandbox_args)
        if options.cwd:
            wrapped_command = f"cd {shlex.quote(options.cwd)} && {wrapped_command}"
        return wrapped_command
