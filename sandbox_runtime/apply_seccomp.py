"""
Install a seccomp BPF program on the current process, then exec a command.

Usage: srt-apply-seccomp <bpf-path> <command> [args...]

Seccomp is one-way: once installed, the filter is inherited by the exec'd
command and everything it spawns.
"""

import ctypes
import ctypes.util
import os
import sys

PR_SET_NO_NEW_PRIVS = 38
PR_SET_SECCOMP = 22
SECCOMP_MODE_FILTER = 2

# Exit status when the filter cannot be installed; the target never runs
EXIT_APPLY_FAILED = 126


class SockFprog(ctypes.Structure):
    """struct sock_fprog { unsigned short len; struct sock_filter *filter; }"""

    _fields_ = [
        ("len", ctypes.c_ushort),
        ("filter", ctypes.c_void_p),
    ]


def install_filter(bpf_program: bytes) -> None:
    """Install a raw BPF program. Raises OSError on failure."""
    if not bpf_program or len(bpf_program) % 8:
        raise ValueError("BPF program must be a non-empty multiple of 8 bytes")

    libc_name = ctypes.util.find_library("c")
    libc = ctypes.CDLL(libc_name, use_errno=True)

    if libc.prctl(PR_SET_NO_NEW_PRIVS, 1, 0, 0, 0) != 0:
        errno = ctypes.get_errno()
        raise OSError(errno, f"prctl(PR_SET_NO_NEW_PRIVS) failed: {os.strerror(errno)}")

    buf = ctypes.create_string_buffer(bpf_program, len(bpf_program))
    program = SockFprog()
    program.len = len(bpf_program) // 8
    program.filter = ctypes.addressof(buf)

    if libc.prctl(PR_SET_SECCOMP, SECCOMP_MODE_FILTER, ctypes.byref(program), 0, 0) != 0:
        errno = ctypes.get_errno()
        raise OSError(errno, f"prctl(PR_SET_SECCOMP) failed: {os.strerror(errno)}")


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) < 2:
        sys.stderr.write("Usage: srt-apply-seccomp <bpf-path> <command> [args...]\n")
        return 2

    bpf_path, command = args[0], args[1:]
    try:
        with open(bpf_path, "rb") as f:
            install_filter(f.read())
    except (OSError, ValueError) as e:
        sys.stderr.write(f"srt-apply-seccomp: {e}\n")
        return EXIT_APPLY_FAILED

    try:
        os.execvp(command[0], command)
    except OSError as e:
        sys.stderr.write(f"srt-apply-seccomp: cannot execute {command[0]}: {e}\n")
        return 127
    return 0


if __name__ == "__main__":
    sys.exit(main())
