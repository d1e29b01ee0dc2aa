"""
SandboxManager: owns the enforcement lifecycle and wraps commands.
"""

import atexit
import logging
import os
import shlex
import signal
import threading
import weakref
from typing import Optional, Sequence

from .backends import get_sandbox_backend
from .base import (
    DependencyCheckResult,
    DependencyStatus,
    NetworkPolicy,
    SandboxBackend,
    SandboxPolicy,
    SandboxState,
    SeccompArtifact,
    WrapOptions,
)
from .config import RuntimeSettings
from .dependencies import SECCOMP_MISSING
from .errors import DependenciesUnavailable, NotInitialized, ProxyStartFailed, SandboxError
from .network import ProxyHandle, ProxySupervisor

logger = logging.getLogger(__name__)

# Set inside every sandbox so tools can tell they are confined
SANDBOX_MARKER_ENV = {"SRT_SANDBOX": "1"}

_live_managers: "weakref.WeakSet[SandboxManager]" = weakref.WeakSet()
_hooks_installed = False
_hooks_lock = threading.Lock()


def _teardown_all():
    for manager in list(_live_managers):
        try:
            manager.teardown()
        except Exception as e:
            logger.error(f"Sandbox teardown failed during exit: {e}")


def _make_signal_handler(signum, previous):
    def handler(received, frame):
        _teardown_all()
        if callable(previous):
            previous(received, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    return handler


def _install_exit_hooks():
    """Tear down every live manager at interpreter exit and on fatal signals."""
    global _hooks_installed
    with _hooks_lock:
        if _hooks_installed:
            return
        _hooks_installed = True

    atexit.register(_teardown_all)

    # signal.signal only works from the main thread
    if threading.current_thread() is not threading.main_thread():
        logger.debug("Not in main thread, relying on atexit for sandbox cleanup")
        return

    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        previous = signal.getsignal(signum)
        if previous == signal.SIG_IGN:
            continue
        signal.signal(signum, _make_signal_handler(signum, previous))


class SandboxManager:
    """
    Composition root for sandbox enforcement.

    Lifecycle: UNINITIALIZED -> READY (initialize) -> READY (update_config)
    -> TORN_DOWN (teardown). While READY the manager owns exactly one proxy
    process and at most one seccomp artifact.

    Each instance is independent, so several sandboxes can coexist in one
    process.
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        backend: Optional[SandboxBackend] = None,
        supervisor: Optional[ProxySupervisor] = None,
    ):
        """
        Initialize the sandbox manager.

        Args:
            settings: Runtime settings (loads ~/.srt/runtime.json if None)
            backend: Platform backend (detected if None)
            supervisor: Proxy supervisor (built from settings if None)
        """
        self.settings = settings or RuntimeSettings()
        self.backend = backend or get_sandbox_backend()
        self.supervisor = supervisor or ProxySupervisor(
            host=self.settings.proxy_host,
            port=self.settings.proxy_port,
            start_timeout=self.settings.proxy_start_timeout,
            stop_timeout=self.settings.proxy_stop_timeout,
            reconfigure_timeout=self.settings.reconfigure_timeout,
        )

        self.state = SandboxState.UNINITIALIZED
        self.warnings: list[str] = []
        self._policy: Optional[SandboxPolicy] = None
        self._proxy: Optional[ProxyHandle] = None
        self._seccomp: Optional[SeccompArtifact] = None
        self._lock = threading.RLock()

        logger.debug(
            f"Using sandbox backend: {self.backend.__class__.__name__} "
            f"(platform: {self.backend.get_platform()})"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.teardown()

    def check_dependencies(self) -> DependencyCheckResult:
        """Preflight check; usable without initialize()."""
        return self.backend.check_dependencies(self.settings.seccomp_override_paths)

    def get_dependency_status(self) -> DependencyStatus:
        """Independent capability flags; usable without initialize()."""
        return self.backend.get_dependency_status(self.settings.seccomp_override_paths)

    def initialize(self, policy: Optional[SandboxPolicy] = None) -> None:
        """
        Bring up enforcement for ``policy``.

        Raises:
            DependenciesUnavailable: required tools are missing; nothing was
                started and the previous state is kept
            ProxyStartFailed: the filtering proxy could not be started
        """
        policy = policy or SandboxPolicy()

        with self._lock:
            if self.state is SandboxState.TORN_DOWN:
                raise SandboxError("SandboxManager was torn down; create a new instance")

            result = self.check_dependencies()
            if result.errors:
                for error in result.errors:
                    logger.error(f"Sandbox dependency missing: {error}")
                raise DependenciesUnavailable(result.errors)

            warnings = list(result.warnings)
            for warning in warnings:
                logger.warning(f"Sandbox running degraded: {warning}")

            if self.state is SandboxState.READY:
                logger.info("Re-initializing sandbox, releasing previous proxy and filter")
                self._release_resources()

            artifact = None
            if self.backend.supports_seccomp:
                artifact = self.backend.acquire_filter(self.settings.seccomp_override_paths)
                if artifact is None and SECCOMP_MISSING not in warnings:
                    logger.warning(f"Sandbox running degraded: {SECCOMP_MISSING}")
                    warnings.append(SECCOMP_MISSING)

            try:
                proxy = self.supervisor.start(policy.network)
            except ProxyStartFailed:
                self.backend.release_filter(artifact)
                if self.state is SandboxState.READY:
                    self.state = SandboxState.TORN_DOWN
                raise

            self._policy = policy
            self._proxy = proxy
            self._seccomp = artifact
            self.warnings = warnings
            self.state = SandboxState.READY
            _live_managers.add(self)

        _install_exit_hooks()
        logger.info(
            f"Sandbox ready (proxy pid {proxy.pid}, "
            f"seccomp {'enabled' if artifact else 'unavailable'})"
        )

    def update_config(self, policy: SandboxPolicy) -> None:
        """
        Replace the active policy.

        Network rules apply to the live proxy immediately. Filesystem rules
        apply to commands wrapped from now on; running sandboxes keep the
        mounts they started with.
        """
        with self._lock:
            self._require_ready("update_config")
            self._policy = policy
            if not self.supervisor.reconfigure(self._proxy, policy.network):
                logger.warning(
                    "Network policy stored but not applied; proxy is not running, "
                    "network access is revoked"
                )

    def get_network_restriction_config(self) -> Optional[NetworkPolicy]:
        """The network policy currently in effect, or None before initialize()."""
        policy = self._policy
        return policy.network if policy else None

    def wrap_with_sandbox(self, command: str) -> str:
        """
        Wrap a command line so it runs confined.

        The command is split into words with shell quoting rules and each
        word is passed on literally: pipes, redirections, ``;`` and ``$VAR``
        are not interpreted inside the sandbox. Use wrap_raw_with_sandbox()
        for shell syntax.

        Raises:
            NotInitialized: before initialize() or after teardown()
            InvalidMountPattern: the filesystem policy cannot be compiled
            ValueError: the command is empty or has unbalanced quotes
        """
        with self._lock:
            self._require_ready("wrap_with_sandbox")
        argv = shlex.split(command)
        if not argv:
            raise ValueError("empty command")
        return self._wrap(shlex.join(argv))

    def wrap_argv_with_sandbox(self, argv: Sequence[str]) -> str:
        """Wrap an already-split argument vector. Each element is quoted."""
        if not argv:
            raise ValueError("empty command")
        return self._wrap(shlex.join(argv))

    def wrap_raw_with_sandbox(self, command: str) -> str:
        """
        Wrap a shell command string verbatim (``sh -c`` inside the sandbox).

        Opt-in: the string is interpreted by the shell, so anything spliced
        into it from untrusted input can inject commands. Confinement still
        applies to everything it runs.
        """
        if not command.strip():
            raise ValueError("empty command")
        logger.debug(f"Wrapping raw shell command: {command}")
        return self._wrap(command)

    def _wrap(self, inner_command: str) -> str:
        with self._lock:
            self._require_ready("wrap_with_sandbox")
            policy = self._policy
            proxy = self._proxy
            artifact = self._seccomp

        plan = self.backend.compile_filesystem(policy.filesystem)

        endpoint = None
        if proxy.is_alive():
            endpoint = proxy.endpoint()
        else:
            logger.warning(
                "Filtering proxy is not running; the sandboxed command gets no network access"
            )

        options = WrapOptions(
            plan=plan,
            proxy=endpoint,
            seccomp=artifact,
            bridge_port=self.settings.bridge_port,
            cwd=os.getcwd(),
            env=dict(SANDBOX_MARKER_ENV),
        )
        wrapped = self.backend.build_command(inner_command, options)
        logger.debug(f"Wrapped command with {self.backend.__class__.__name__}: {wrapped}")
        return wrapped

    def teardown(self) -> None:
        """Stop the proxy and release the filter. Safe to call repeatedly."""
        with self._lock:
            if self.state is SandboxState.TORN_DOWN:
                return
            self._release_resources()
            self.state = SandboxState.TORN_DOWN
            _live_managers.discard(self)
        logger.info("Sandbox torn down")

    def _release_resources(self) -> None:
        proxy, artifact = self._proxy, self._seccomp
        self._proxy = None
        self._seccomp = None
        try:
            self.supervisor.stop(proxy)
        finally:
            self.backend.release_filter(artifact)

    def _require_ready(self, operation: str) -> None:
        if self.state is not SandboxState.READY:
            raise NotInitialized(
                f"{operation} requires an initialized sandbox (state: {self.state.value})"
            )

    def get_status(self) -> dict:
        """
        Get the current status of sandboxing.

        Returns:
            Dictionary with status information
        """
        proxy = self._proxy
        artifact = self._seccomp
        return {
            "state": self.state.value,
            "backend": self.backend.__class__.__name__,
            "platform": self.backend.get_platform(),
            "proxy_pid": proxy.pid if proxy else None,
            "proxy_address": f"{proxy.listen_address[0]}:{proxy.listen_address[1]}" if proxy else None,
            "proxy_running": proxy.is_alive() if proxy else False,
            "proxy_crashed": proxy.crashed if proxy else False,
            "seccomp_bpf_path": artifact.bpf_path if artifact else None,
            "seccomp_apply_helper_path": artifact.apply_helper_path if artifact else None,
            "warnings": list(self.warnings),
            "dependencies": vars(self.get_dependency_status()),
        }
