"""Tests for the SandboxManager lifecycle."""

import os
import shlex
import shutil
import signal
import socket
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from sandbox_runtime.base import (
    DependencyCheckResult,
    DependencyStatus,
    FilesystemPolicy,
    NetworkPolicy,
    SandboxPolicy,
    SandboxState,
    SeccompArtifact,
)
from sandbox_runtime.config import RuntimeSettings
from sandbox_runtime.dependencies import SECCOMP_MISSING
from sandbox_runtime.errors import (
    DependenciesUnavailable,
    InvalidMountPattern,
    NotInitialized,
    ProxyStartFailed,
    SandboxError,
)
from sandbox_runtime.linux_isolator import BubblewrapBackend
from sandbox_runtime.manager import SandboxManager
from sandbox_runtime.network import ProxyHandle, ProxySupervisor

from test_proxy_supervisor import connect_status


class StubBackend(BubblewrapBackend):
    """Bubblewrap command building with a scripted host probe."""

    def __init__(self, errors=(), warnings=(), with_filter=True):
        self.errors = list(errors)
        self.warnings = list(warnings)
        self.with_filter = with_filter
        self.acquired: list[SeccompArtifact] = []

    def check_dependencies(self, override_paths=None):
        return DependencyCheckResult(errors=list(self.errors), warnings=list(self.warnings))

    def get_dependency_status(self, override_paths=None):
        return DependencyStatus(True, True, self.with_filter, self.with_filter)

    def acquire_filter(self, override_paths=None):
        if not self.with_filter:
            return None
        workdir = tempfile.mkdtemp(prefix="srt_manager_test_")
        bpf_path = os.path.join(workdir, "unix-block.bpf")
        with open(bpf_path, "wb") as f:
            f.write(b"\x00" * 8)
        artifact = SeccompArtifact(
            bpf_path=bpf_path,
            apply_helper_path="/usr/bin/srt-apply-seccomp",
            owned=True,
            workdir=workdir,
        )
        self.acquired.append(artifact)
        return artifact


def inner_command(wrapped: str) -> str:
    """The command string handed to /bin/sh -c by the innermost shell."""
    argv = shlex.split(wrapped)
    script = argv[argv.index("--") + 3]
    return shlex.split(script)[-1]


def make_handle(pid: int = 4242) -> ProxyHandle:
    return ProxyHandle(
        pid=pid,
        listen_address=("127.0.0.1", 40123),
        socket_path="/tmp/srt-proxy-test/proxy.sock",
    )


class ManagerTestCase(unittest.TestCase):
    """Manager wired to a stub backend and a mock proxy supervisor."""

    def setUp(self):
        self.tmpdir = os.path.realpath(tempfile.mkdtemp(prefix="srt_manager_cfg_"))
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)

        hooks = patch("sandbox_runtime.manager._install_exit_hooks")
        hooks.start()
        self.addCleanup(hooks.stop)

        self.settings = RuntimeSettings(config_dir=self.tmpdir)
        self.backend = StubBackend()
        self.supervisor = MagicMock(spec=ProxySupervisor)
        self.supervisor.start.side_effect = lambda policy: make_handle()
        self.supervisor.reconfigure.return_value = True
        self.manager = SandboxManager(
            settings=self.settings, backend=self.backend, supervisor=self.supervisor
        )
        self.addCleanup(self.manager.teardown)


class TestBeforeInitialize(ManagerTestCase):
    """Operations that require READY must fail without side effects."""

    def test_wrap_before_initialize(self):
        """Test that wrapping fails with NotInitialized and starts nothing."""
        with self.assertRaises(NotInitialized):
            self.manager.wrap_with_sandbox("echo hi")

        self.supervisor.start.assert_not_called()
        self.assertEqual(self.backend.acquired, [])
        self.assertIs(self.manager.state, SandboxState.UNINITIALIZED)

    def test_other_wrap_modes_before_initialize(self):
        with self.assertRaises(NotInitialized):
            self.manager.wrap_raw_with_sandbox("echo hi")
        with self.assertRaises(NotInitialized):
            self.manager.wrap_argv_with_sandbox(["echo", "hi"])

    def test_unbalanced_quote_before_initialize(self):
        """Test that the state check comes before parsing the command."""
        with self.assertRaises(NotInitialized):
            self.manager.wrap_with_sandbox('echo "unterminated')

    def test_update_config_before_initialize(self):
        with self.assertRaises(NotInitialized):
            self.manager.update_config(SandboxPolicy())
        self.supervisor.reconfigure.assert_not_called()

    def test_no_network_config_before_initialize(self):
        self.assertIsNone(self.manager.get_network_restriction_config())

    def test_preflight_without_initialize(self):
        """Test that dependency checks work in any state."""
        self.assertTrue(self.manager.check_dependencies().ok)
        self.assertTrue(self.manager.get_dependency_status().has_fs_isolation_tool)


class TestInitialize(ManagerTestCase):
    """Test bringing enforcement up."""

    def test_missing_dependencies(self):
        """Test that probe errors abort initialize before anything starts."""
        self.backend.errors = ["bubblewrap (bwrap) not installed"]

        with self.assertRaises(DependenciesUnavailable) as ctx:
            self.manager.initialize()

        self.assertEqual(ctx.exception.errors, ["bubblewrap (bwrap) not installed"])
        self.supervisor.start.assert_not_called()
        self.assertEqual(self.backend.acquired, [])
        self.assertIs(self.manager.state, SandboxState.UNINITIALIZED)

    def test_ready_after_initialize(self):
        """Test that initialize starts the proxy with the network policy."""
        policy = SandboxPolicy(network=NetworkPolicy(allowed_domains={"github.com"}))
        self.manager.initialize(policy)

        self.assertIs(self.manager.state, SandboxState.READY)
        self.supervisor.start.assert_called_once_with(policy.network)
        self.assertEqual(len(self.backend.acquired), 1)
        self.assertEqual(self.manager.get_network_restriction_config(), policy.network)
        self.assertEqual(self.manager.warnings, [])

    def test_degraded_without_filter(self):
        """Test that a missing filter is a warning, not a failure."""
        self.backend.with_filter = False

        self.manager.initialize()

        self.assertIs(self.manager.state, SandboxState.READY)
        self.assertIn(SECCOMP_MISSING, self.manager.warnings)
        self.assertNotIn("srt-apply-seccomp", self.manager.wrap_with_sandbox("true"))

    def test_probe_warning_not_duplicated(self):
        self.backend.warnings = [SECCOMP_MISSING]
        self.backend.with_filter = False

        self.manager.initialize()

        self.assertEqual(self.manager.warnings, [SECCOMP_MISSING])

    def test_proxy_start_failure_releases_filter(self):
        """Test that a failed proxy start leaves no filter files behind."""
        self.supervisor.start.side_effect = ProxyStartFailed("address in use")

        with self.assertRaises(ProxyStartFailed):
            self.manager.initialize()

        artifact = self.backend.acquired[0]
        self.assertFalse(os.path.exists(artifact.workdir))
        self.assertIs(self.manager.state, SandboxState.UNINITIALIZED)

    def test_reinitialize_replaces_resources(self):
        """Test that initialize while READY releases the previous proxy and filter."""
        first, second = make_handle(1001), make_handle(1002)
        self.supervisor.start.side_effect = [first, second]

        self.manager.initialize()
        self.manager.initialize()

        self.supervisor.stop.assert_called_once_with(first)
        self.assertFalse(os.path.exists(self.backend.acquired[0].workdir))
        self.assertTrue(os.path.exists(self.backend.acquired[1].workdir))
        self.assertEqual(self.manager.get_status()["proxy_pid"], 1002)

    def test_reinitialize_with_missing_dependencies_keeps_ready(self):
        self.manager.initialize()
        self.backend.errors = ["socat not installed"]

        with self.assertRaises(DependenciesUnavailable):
            self.manager.initialize()

        self.assertIs(self.manager.state, SandboxState.READY)
        self.supervisor.stop.assert_not_called()

    def test_initialize_after_teardown(self):
        """Test that a torn-down manager cannot be revived."""
        self.manager.initialize()
        self.manager.teardown()

        with self.assertRaises(SandboxError):
            self.manager.initialize()
        self.assertIs(self.manager.state, SandboxState.TORN_DOWN)


class TestWrap(ManagerTestCase):
    """Test the three wrapping entry points."""

    def setUp(self):
        super().setUp()
        self.manager.initialize()

    def test_wrap_contains_enforcement(self):
        """Test that the wrapped command carries isolation, bridge and filter."""
        wrapped = self.manager.wrap_with_sandbox("ls -la")
        artifact = self.backend.acquired[0]

        self.assertTrue(wrapped.startswith("bwrap "))
        self.assertIn("--unshare-net", wrapped)
        self.assertIn("socat", wrapped)
        self.assertIn(artifact.bpf_path, wrapped)
        self.assertIn("SRT_SANDBOX", wrapped)
        self.assertEqual(inner_command(wrapped), "ls -la")

    def test_shell_metacharacters_are_literal(self):
        """Test that ';' is passed as an argument, not a command separator."""
        wrapped = self.manager.wrap_with_sandbox("echo hi; rm -rf /tmp/x")
        self.assertEqual(inner_command(wrapped), "echo 'hi;' rm -rf /tmp/x")

    def test_raw_mode_is_verbatim(self):
        """Test that raw mode hands the string to the shell unchanged."""
        wrapped = self.manager.wrap_raw_with_sandbox("echo hi | wc -c")
        self.assertEqual(inner_command(wrapped), "echo hi | wc -c")

    def test_argv_mode(self):
        wrapped = self.manager.wrap_argv_with_sandbox(["printf", "%s\n", "a b"])
        self.assertEqual(shlex.split(inner_command(wrapped)), ["printf", "%s\n", "a b"])

    def test_empty_command(self):
        with self.assertRaises(ValueError):
            self.manager.wrap_with_sandbox("   ")
        with self.assertRaises(ValueError):
            self.manager.wrap_argv_with_sandbox([])
        with self.assertRaises(ValueError):
            self.manager.wrap_raw_with_sandbox("")

    def test_filesystem_update_applies_to_next_wrap(self):
        """Test that filesystem rules are compiled at wrap time."""
        secret = os.path.join(self.tmpdir, "secret")
        os.mkdir(secret)
        self.assertNotIn("--tmpfs", self.manager.wrap_with_sandbox("true"))

        self.manager.update_config(SandboxPolicy(filesystem=FilesystemPolicy(deny_read=(secret,))))

        self.assertIn(f"--tmpfs {secret}", self.manager.wrap_with_sandbox("true"))

    def test_invalid_mount_pattern(self):
        """Test that a bad pattern fails the wrap and leaves the manager READY."""
        link = os.path.join(self.tmpdir, "dangling")
        os.symlink(os.path.join(self.tmpdir, "missing"), link)
        self.manager.update_config(SandboxPolicy(filesystem=FilesystemPolicy(allow_write=(link,))))

        with self.assertRaises(InvalidMountPattern):
            self.manager.wrap_with_sandbox("true")
        self.assertIs(self.manager.state, SandboxState.READY)

    def test_update_config_pushes_network_rules(self):
        policy = SandboxPolicy(network=NetworkPolicy(denied_domains={"evil.example"}))
        self.manager.update_config(policy)

        handle = self.manager._proxy
        self.supervisor.reconfigure.assert_called_once_with(handle, policy.network)
        self.assertEqual(self.manager.get_network_restriction_config(), policy.network)

    def test_update_config_on_dead_proxy_warns(self):
        self.supervisor.reconfigure.return_value = False
        with self.assertLogs("sandbox_runtime.manager", level="WARNING"):
            self.manager.update_config(SandboxPolicy())

    def test_crashed_proxy_fails_closed(self):
        """Test that wraps after a proxy crash get no network path at all."""
        self.manager._proxy.crashed = True

        with self.assertLogs("sandbox_runtime.manager", level="WARNING"):
            wrapped = self.manager.wrap_with_sandbox("curl https://example.com")

        self.assertIn("--unshare-net", wrapped)
        self.assertNotIn("socat", wrapped)
        self.assertNotIn("HTTPS_PROXY", wrapped)
        self.assertNotIn("proxy.sock", wrapped)

    def test_get_status(self):
        status = self.manager.get_status()
        self.assertEqual(status["state"], "ready")
        self.assertEqual(status["platform"], "linux")
        self.assertEqual(status["proxy_pid"], 4242)
        self.assertEqual(status["proxy_address"], "127.0.0.1:40123")
        self.assertTrue(status["proxy_running"])
        self.assertEqual(status["seccomp_bpf_path"], self.backend.acquired[0].bpf_path)
        self.assertTrue(status["dependencies"]["has_proxy_tool"])


class TestTeardown(ManagerTestCase):
    """Test releasing enforcement resources."""

    def test_teardown_is_leak_free_and_idempotent(self):
        self.manager.initialize()
        handle = self.manager._proxy
        artifact = self.backend.acquired[0]

        self.manager.teardown()
        self.manager.teardown()

        self.supervisor.stop.assert_called_once_with(handle)
        self.assertFalse(os.path.exists(artifact.workdir))
        self.assertIs(self.manager.state, SandboxState.TORN_DOWN)
        with self.assertRaises(NotInitialized):
            self.manager.wrap_with_sandbox("true")

    def test_teardown_before_initialize(self):
        self.manager.teardown()
        self.assertIs(self.manager.state, SandboxState.TORN_DOWN)
        self.supervisor.stop.assert_called_once_with(None)

    def test_filter_released_even_if_stop_fails(self):
        self.manager.initialize()
        artifact = self.backend.acquired[0]
        self.supervisor.stop.side_effect = OSError("boom")

        with self.assertRaises(OSError):
            self.manager.teardown()
        self.assertFalse(os.path.exists(artifact.workdir))
        self.supervisor.stop.side_effect = None

    def test_context_manager(self):
        with SandboxManager(
            settings=self.settings, backend=self.backend, supervisor=self.supervisor
        ) as manager:
            manager.initialize()
            self.assertIs(manager.state, SandboxState.READY)
        self.assertIs(manager.state, SandboxState.TORN_DOWN)


class TestManagerWithProxy(unittest.TestCase):
    """End-to-end lifecycle against a real proxy process."""

    def setUp(self):
        tmpdir = tempfile.mkdtemp(prefix="srt_manager_e2e_")
        self.addCleanup(shutil.rmtree, tmpdir, ignore_errors=True)
        hooks = patch("sandbox_runtime.manager._install_exit_hooks")
        hooks.start()
        self.addCleanup(hooks.stop)

        self.backend = StubBackend()
        self.manager = SandboxManager(settings=RuntimeSettings(config_dir=tmpdir), backend=self.backend)
        self.addCleanup(self.manager.teardown)

        self.target = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.target.bind(("127.0.0.1", 0))
        self.target.listen(16)
        self.addCleanup(self.target.close)
        self.target_addr = f"127.0.0.1:{self.target.getsockname()[1]}"

    def test_update_config_without_restart(self):
        """Test that new network rules change the outcome in the same proxy process."""
        self.manager.initialize(SandboxPolicy(network=NetworkPolicy(allowed_domains={"127.0.0.1"})))
        handle = self.manager._proxy
        pid = handle.pid

        self.assertIn("200", connect_status(handle.listen_address, self.target_addr))

        self.manager.update_config(SandboxPolicy(network=NetworkPolicy(denied_domains={"127.0.0.1"})))

        self.assertIn("403", connect_status(handle.listen_address, self.target_addr))
        self.assertEqual(self.manager._proxy.pid, pid)
        self.assertIsNone(handle._process.poll())

    def test_stalled_proxy_revokes_network(self):
        """Test that an update the proxy never confirms leaves wraps without network."""
        tmpdir = tempfile.mkdtemp(prefix="srt_manager_stall_")
        self.addCleanup(shutil.rmtree, tmpdir, ignore_errors=True)
        manager = SandboxManager(
            settings=RuntimeSettings(config_dir=tmpdir),
            backend=StubBackend(),
            supervisor=ProxySupervisor(reconfigure_timeout=0.5),
        )
        self.addCleanup(manager.teardown)
        manager.initialize(SandboxPolicy(network=NetworkPolicy(allowed_domains={"127.0.0.1"})))
        handle = manager._proxy
        self.assertIn("socat", manager.wrap_with_sandbox("true"))
        os.kill(handle.pid, signal.SIGSTOP)

        with self.assertLogs("sandbox_runtime.manager", level="WARNING"):
            manager.update_config(SandboxPolicy(network=NetworkPolicy(denied_domains={"127.0.0.1"})))

        self.assertTrue(handle.crashed)
        self.assertIsNotNone(handle._process.poll())
        wrapped = manager.wrap_with_sandbox("true")
        self.assertIn("--unshare-net", wrapped)
        self.assertNotIn("socat", wrapped)
        self.assertNotIn(handle.socket_path, wrapped)

    def test_teardown_stops_proxy_and_removes_filter(self):
        """Test that no proxy process or filter file survives teardown."""
        self.manager.initialize()
        handle = self.manager._proxy
        artifact = self.backend.acquired[0]

        self.manager.teardown()
        self.manager.teardown()

        self.assertIsNotNone(handle._process.poll())
        self.assertFalse(os.path.exists(handle.socket_path))
        self.assertFalse(os.path.exists(artifact.bpf_path))


if __name__ == "__main__":
    unittest.main()
