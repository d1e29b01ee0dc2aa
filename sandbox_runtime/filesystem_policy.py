"""
Compile deny-read / allow-write / deny-write rules into an ordered mount plan.

The plan is layered on top of a read-only view of the whole host:

- deny_read hides a path (empty read-only tmpfs for directories, /dev/null
  for files)
- allow_write re-binds a path read-write
- deny_write re-binds a path read-only, even under a writable ancestor

Mounts are applied ancestors first, so a more specific path always
overrides a broader one. For the same path, the last rule in the combined
(deny_read, allow_write, deny_write) sequence wins.
"""

import glob
import logging
import os
from dataclasses import dataclass, field

from .base import FilesystemPolicy
from .errors import InvalidMountPattern

logger = logging.getLogger(__name__)

MASK = "mask"
READ_WRITE = "read_write"
READ_ONLY = "read_only"

_GLOB_CHARS = ("*", "?", "[")


@dataclass
class MountDirective:
    """One mount applied on top of the read-only baseline."""

    kind: str
    path: str
    is_dir: bool = True
    source_pattern: str = ""

    def to_bwrap_args(self) -> list[str]:
        if self.kind == MASK:
            if self.is_dir:
                return ["--tmpfs", self.path]
            return ["--ro-bind", "/dev/null", self.path]
        if self.kind == READ_WRITE:
            return ["--bind", self.path, self.path]
        return ["--ro-bind", self.path, self.path]


@dataclass
class FilesystemPlan:
    """Ordered mount directives plus non-fatal findings."""

    directives: list[MountDirective] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_bwrap_args(self) -> list[str]:
        args = []
        for directive in self.directives:
            args.extend(directive.to_bwrap_args())
        return args

    def remount_args(self) -> list[str]:
        """Make masked directories read-only; must follow every other mount."""
        args = []
        for directive in self.directives:
            if directive.kind == MASK and directive.is_dir:
                args.extend(["--remount-ro", directive.path])
        return args

    def paths(self, kind: str) -> list[str]:
        return [d.path for d in self.directives if d.kind == kind]


def _resolve_one(pattern: str, path: str) -> str:
    # A dangling link could be re-pointed after compilation
    if os.path.islink(path) and not os.path.exists(path):
        raise InvalidMountPattern(pattern, f"unresolved symlink: {path}")
    try:
        return os.path.realpath(path, strict=True)
    except OSError as e:
        raise InvalidMountPattern(pattern, f"cannot resolve {path}: {e}") from e


def resolve_pattern(pattern: str, cwd: str = None) -> list[str]:
    """
    Expand one pattern into resolved absolute paths.

    Args:
        pattern: Path, optionally with ~ and glob characters
        cwd: Base directory for relative patterns (default: current directory)

    Returns:
        Resolved paths; empty if nothing matches
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidMountPattern(str(pattern), "empty pattern")
    if "\x00" in pattern:
        raise InvalidMountPattern(pattern, "contains NUL byte")

    expanded = os.path.expanduser(pattern)
    if not os.path.isabs(expanded):
        expanded = os.path.join(cwd or os.getcwd(), expanded)
    expanded = os.path.normpath(expanded)

    if any(ch in expanded for ch in _GLOB_CHARS):
        candidates = sorted(glob.glob(expanded))
    elif os.path.lexists(expanded):
        candidates = [expanded]
    else:
        candidates = []

    return [_resolve_one(pattern, candidate) for candidate in candidates]


def compile_filesystem(policy: FilesystemPolicy, cwd: str = None) -> FilesystemPlan:
    """
    Compile a filesystem policy into a FilesystemPlan.

    Raises:
        InvalidMountPattern: for malformed patterns or unresolvable symlinks
    """
    plan = FilesystemPlan()
    ordered: dict[str, MountDirective] = {}

    categories = (
        (MASK, policy.deny_read),
        (READ_WRITE, policy.allow_write),
        (READ_ONLY, policy.deny_write),
    )
    for kind, patterns in categories:
        for pattern in patterns:
            resolved = resolve_pattern(pattern, cwd)
            if not resolved:
                warning = f"Path pattern {pattern!r} matched no existing path, skipping"
                logger.warning(warning)
                plan.warnings.append(warning)
                continue

            for path in resolved:
                if path == "/" and kind == MASK:
                    raise InvalidMountPattern(pattern, "cannot hide the root filesystem")
                # Re-insert so a later rule for the same path takes its place in the order
                ordered.pop(path, None)
                ordered[path] = MountDirective(
                    kind=kind,
                    path=path,
                    is_dir=os.path.isdir(path),
                    source_pattern=pattern,
                )

    # Stable: equal depths keep declaration order
    plan.directives = sorted(ordered.values(), key=lambda d: _depth(d.path))

    for directive in plan.directives:
        logger.debug(f"Mount directive: {directive.kind} {directive.path}")
    return plan


def _depth(path: str) -> int:
    return len([part for part in path.split(os.sep) if part])
