"""
Preflight report of sandbox dependencies, rendered with rich.
"""

from typing import Optional

from rich.console import Console, Group
from rich.table import Table
from rich.text import Text

from .backends import get_sandbox_backend
from .base import DependencyCheckResult, DependencyStatus, SandboxBackend, SeccompOverridePaths

_STATUS_ROWS = (
    ("has_fs_isolation_tool", "Filesystem isolation tool"),
    ("has_proxy_tool", "Proxy bridge tool"),
    ("has_seccomp_bpf", "Seccomp bytecode"),
    ("has_seccomp_apply_helper", "Seccomp apply helper"),
)


def render_dependency_report(
    result: DependencyCheckResult,
    status: DependencyStatus,
    platform: str = "",
) -> Group:
    """Build a renderable summary of a probe result."""
    table = Table(title=f"Sandbox dependencies{f' ({platform})' if platform else ''}")
    table.add_column("Component")
    table.add_column("Available", justify="center")

    for attr, label in _STATUS_ROWS:
        present = getattr(status, attr)
        table.add_row(label, Text("yes", style="green") if present else Text("no", style="red"))

    lines = [table]
    for error in result.errors:
        lines.append(Text(f"error: {error}", style="bold red"))
    for warning in result.warnings:
        lines.append(Text(f"warning: {warning}", style="yellow"))
    if result.ok and not result.warnings:
        lines.append(Text("All sandbox dependencies are available.", style="green"))
    elif result.ok:
        lines.append(Text("Sandbox can run in degraded mode.", style="yellow"))
    else:
        lines.append(Text("Sandbox cannot be created on this host.", style="bold red"))
    return Group(*lines)


def print_dependency_report(
    console: Optional[Console] = None,
    backend: Optional[SandboxBackend] = None,
    override_paths: Optional[SeccompOverridePaths] = None,
) -> DependencyCheckResult:
    """Probe the host, print the report and return the probe result."""
    console = console or Console(stderr=True)
    backend = backend or get_sandbox_backend()

    result = backend.check_dependencies(override_paths)
    status = backend.get_dependency_status(override_paths)
    console.print(render_dependency_report(result, status, backend.get_platform()))
    return result
