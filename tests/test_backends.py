"""Tests for platform backend selection."""

import unittest
from unittest.mock import patch

from sandbox_runtime.backends import UnsupportedBackend, get_sandbox_backend
from sandbox_runtime.base import FilesystemPolicy, WrapOptions, get_current_platform
from sandbox_runtime.errors import SandboxError
from sandbox_runtime.filesystem_policy import FilesystemPlan
from sandbox_runtime.linux_isolator import BubblewrapBackend
from sandbox_runtime.macos_isolator import SandboxExecBackend


class TestGetSandboxBackend(unittest.TestCase):
    """Test cases for backend selection."""

    def test_linux(self):
        self.assertIsInstance(get_sandbox_backend("linux"), BubblewrapBackend)

    def test_macos(self):
        self.assertIsInstance(get_sandbox_backend("macos"), SandboxExecBackend)

    def test_unsupported_platform(self):
        """Test that other platforms get a backend that always fails the probe."""
        backend = get_sandbox_backend("windows")

        self.assertIsInstance(backend, UnsupportedBackend)
        self.assertFalse(backend.is_available())
        self.assertIsNone(backend.acquire_filter())
        self.assertEqual(backend.compile_filesystem(FilesystemPolicy()).directives, [])
        with self.assertRaises(SandboxError):
            backend.build_command("true", WrapOptions(plan=FilesystemPlan()))

    @patch("platform.system", return_value="Darwin")
    def test_detects_current_platform(self, _):
        self.assertEqual(get_current_platform(), "macos")
        self.assertIsInstance(get_sandbox_backend(), SandboxExecBackend)


if __name__ == "__main__":
    unittest.main()
