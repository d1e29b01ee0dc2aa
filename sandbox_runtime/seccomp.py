"""
Seccomp filter lifecycle: locate, generate and clean up the BPF program
that blocks unix-domain socket creation inside the sandbox.

The filter is installed by the apply helper as the first step of the exec
chain, so the target command never runs without it.
"""

import logging
import os
import platform
import shutil
import stat
import struct
import sys
import tempfile
from pathlib import Path
from typing import Optional

from .base import SeccompArtifact, SeccompOverridePaths
from .errors import FilterGenerationFailed

logger = logging.getLogger(__name__)

BPF_FILE_NAME = "unix-block.bpf"
APPLY_HELPER_NAME = "apply-seccomp"
APPLY_HELPER_COMMAND = "srt-apply-seccomp"

# Directory holding pre-generated artifacts, overridable for packagers
SECCOMP_DIR_ENV = "SRT_SECCOMP_DIR"
VENDOR_DIR = Path(__file__).parent / "vendor" / "seccomp"

# Seccomp return values from linux/seccomp.h
SECCOMP_RET_KILL_PROCESS = 0x80000000
SECCOMP_RET_ALLOW = 0x7FFF0000
SECCOMP_RET_ERRNO = 0x00050000
EPERM = 1
AF_UNIX = 1

# BPF opcodes
BPF_LD = 0x00
BPF_W = 0x00
BPF_ABS = 0x20
BPF_JMP = 0x05
BPF_JEQ = 0x10
BPF_JGE = 0x30
BPF_K = 0x00
BPF_RET = 0x06

# struct seccomp_data offsets
SECCOMP_DATA_NR = 0
SECCOMP_DATA_ARCH = 4
SECCOMP_DATA_ARG0 = 16

X32_SYSCALL_BIT = 0x40000000

# (audit arch, socket syscall number, has x32 ABI)
SUPPORTED_ARCHES = {
    "x86_64": (0xC000003E, 41, True),
    "aarch64": (0xC00000B7, 198, False),
}


def _normalize_machine(machine: Optional[str] = None) -> str:
    machine = (machine or platform.machine()).lower()
    if machine in ("amd64", "x64"):
        return "x86_64"
    if machine == "arm64":
        return "aarch64"
    return machine


def is_generation_supported(machine: Optional[str] = None) -> bool:
    """Whether the built-in generator knows the syscall ABI of this machine."""
    return sys.platform.startswith("linux") and _normalize_machine(machine) in SUPPORTED_ARCHES


def _bpf_stmt(code: int, k: int) -> bytes:
    return struct.pack("=HBBI", code, 0, 0, k)


def _bpf_jump(code: int, k: int, jt: int, jf: int) -> bytes:
    return struct.pack("=HBBI", code, jt, jf, k)


def build_unix_socket_filter(machine: Optional[str] = None) -> bytes:
    """
    Build a BPF program that makes socket(AF_UNIX, ...) fail with EPERM.

    Syscalls made through a foreign ABI (i386 ``int 0x80``, arm32 compat)
    kill the process, and on x86_64 every x32 syscall fails with EPERM.

    Args:
        machine: Override architecture detection (mainly for testing)

    Returns:
        Raw sock_filter instructions, 8 bytes each
    """
    arch = _normalize_machine(machine)
    if arch not in SUPPORTED_ARCHES:
        raise FilterGenerationFailed(f"unsupported architecture: {arch}")

    audit_arch, socket_nr, has_x32 = SUPPORTED_ARCHES[arch]
    allow = SECCOMP_RET_ALLOW
    deny = SECCOMP_RET_ERRNO | EPERM

    instructions = [
        _bpf_stmt(BPF_LD | BPF_W | BPF_ABS, SECCOMP_DATA_ARCH),
        _bpf_jump(BPF_JMP | BPF_JEQ | BPF_K, audit_arch, 1, 0),
        _bpf_stmt(BPF_RET | BPF_K, SECCOMP_RET_KILL_PROCESS),
        _bpf_stmt(BPF_LD | BPF_W | BPF_ABS, SECCOMP_DATA_NR),
    ]
    if has_x32:
        # x32 shares the x86_64 audit arch; its numbers carry the x32 bit
        instructions.append(_bpf_jump(BPF_JMP | BPF_JGE | BPF_K, X32_SYSCALL_BIT, 3, 0))
    instructions += [
        _bpf_jump(BPF_JMP | BPF_JEQ | BPF_K, socket_nr, 0, 3),
        _bpf_stmt(BPF_LD | BPF_W | BPF_ABS, SECCOMP_DATA_ARG0),
        _bpf_jump(BPF_JMP | BPF_JEQ | BPF_K, AF_UNIX, 0, 1),
        _bpf_stmt(BPF_RET | BPF_K, deny),
        _bpf_stmt(BPF_RET | BPF_K, allow),
    ]
    return b"".join(instructions)


def _vendor_dirs() -> list[Path]:
    dirs = []
    env_dir = os.environ.get(SECCOMP_DIR_ENV)
    if env_dir:
        dirs.append(Path(env_dir))
    dirs.append(VENDOR_DIR / _normalize_machine())
    return dirs


def get_pre_generated_bpf_path(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> Optional[str]:
    """Find an existing bytecode file, preferring a caller-supplied path."""
    if override_paths and override_paths.bpf_path:
        if os.path.isfile(override_paths.bpf_path):
            return override_paths.bpf_path
        logger.debug(f"Seccomp override bytecode not found: {override_paths.bpf_path}")

    for directory in _vendor_dirs():
        candidate = directory / BPF_FILE_NAME
        if candidate.is_file():
            return str(candidate)
    return None


def get_apply_helper_path(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> Optional[str]:
    """Find an executable apply helper, preferring a caller-supplied path."""
    if override_paths and override_paths.apply_helper_path:
        path = override_paths.apply_helper_path
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
        logger.debug(f"Seccomp override apply helper not usable: {path}")

    installed = shutil.which(APPLY_HELPER_COMMAND)
    if installed:
        return installed

    for directory in _vendor_dirs():
        candidate = directory / APPLY_HELPER_NAME
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


def has_seccomp_bpf(override_paths: Optional[SeccompOverridePaths] = None) -> bool:
    """Bytecode is available if a file exists or it can be generated here."""
    return get_pre_generated_bpf_path(override_paths) is not None or is_generation_supported()


def _write_launcher(path: Path) -> None:
    script = (
        "#!/bin/sh\n"
        f'exec "{sys.executable}" -m sandbox_runtime.apply_seccomp "$@"\n'
    )
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def generate_seccomp_filter(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> SeccompArtifact:
    """
    Generate a filter into a fresh private directory.

    The returned artifact is owned by this process and must be passed to
    release_filter() when no longer needed.
    """
    bpf_program = build_unix_socket_filter()
    helper = get_apply_helper_path(override_paths)

    workdir = tempfile.mkdtemp(prefix="srt-seccomp-")
    try:
        bpf_path = Path(workdir) / BPF_FILE_NAME
        bpf_path.write_bytes(bpf_program)
        bpf_path.chmod(0o644)

        if helper is None:
            launcher = Path(workdir) / APPLY_HELPER_NAME
            _write_launcher(launcher)
            helper = str(launcher)
        # The sandbox sees the host through a read-only bind, so it must be traversable
        os.chmod(workdir, 0o755)
    except OSError as e:
        shutil.rmtree(workdir, ignore_errors=True)
        raise FilterGenerationFailed(f"could not write seccomp filter: {e}") from e

    logger.info(f"Generated seccomp filter at {bpf_path}")
    return SeccompArtifact(
        bpf_path=str(bpf_path),
        apply_helper_path=helper,
        owned=True,
        workdir=workdir,
    )


def acquire_filter(
    override_paths: Optional[SeccompOverridePaths] = None,
) -> Optional[SeccompArtifact]:
    """
    Return a usable seccomp artifact, or None when running degraded.

    Pre-generated artifacts are used as-is and never deleted. Otherwise a
    filter is generated; generation errors are logged, not raised.
    """
    bpf_path = get_pre_generated_bpf_path(override_paths)
    helper = get_apply_helper_path(override_paths)
    if bpf_path and helper:
        logger.debug(f"Using pre-generated seccomp filter {bpf_path} with helper {helper}")
        return SeccompArtifact(bpf_path=bpf_path, apply_helper_path=helper, owned=False)

    if not is_generation_supported():
        logger.warning(
            f"Seccomp filter generation not supported on {sys.platform}/{platform.machine()}"
        )
        return None

    try:
        return generate_seccomp_filter(override_paths)
    except FilterGenerationFailed as e:
        logger.warning(f"Seccomp filter generation failed: {e}")
        return None


def release_filter(artifact: Optional[SeccompArtifact]) -> None:
    """Remove an owned artifact's files. Safe to call more than once."""
    if artifact is None or not artifact.owned:
        return

    if artifact.workdir:
        shutil.rmtree(artifact.workdir, ignore_errors=True)
    else:
        try:
            os.unlink(artifact.bpf_path)
        except FileNotFoundError:
            pass
    logger.debug(f"Released seccomp filter {artifact.bpf_path}")
