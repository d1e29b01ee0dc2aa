"""
Runtime settings for the sandbox runtime itself.

These tune how enforcement is carried out (ports, timeouts, seccomp
locations). They are not the sandbox policy, which callers pass to
SandboxManager.initialize() already validated.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .base import SeccompOverridePaths

logger = logging.getLogger(__name__)


class RuntimeSettings:
    """Manages runtime settings and their persistence."""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize runtime settings.

        Args:
            config_dir: Directory holding runtime.json (default: ~/.srt)
        """
        if config_dir is None:
            config_dir = Path.home() / ".srt"

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "runtime.json"

        # Default configuration
        self._config = {
            # Proxy listener on the host
            "proxy_host": "127.0.0.1",
            "proxy_port": 0,  # 0 picks a free port
            # Loopback port the in-sandbox bridge listens on
            "bridge_port": 3128,
            "proxy_start_timeout": 10.0,
            "proxy_stop_timeout": 2.0,
            "reconfigure_timeout": 5.0,
            # Custom seccomp artifact locations
            "seccomp_bpf_path": None,
            "seccomp_apply_path": None,
        }

        self._load()

    def _load(self):
        """Load configuration from disk."""
        if self.config_file.exists():
            try:
                with open(self.config_file) as f:
                    loaded = json.load(f)
                if not isinstance(loaded, dict):
                    raise ValueError("top-level value must be an object")
                self._config.update(loaded)
            except Exception as e:
                logger.warning(f"Failed to load runtime settings from {self.config_file}: {e}")

    def save(self):
        """Save configuration to disk."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                json.dump(self._config, f, indent=2)
        except Exception as e:
            logger.error(f"Failed to save runtime settings: {e}")

    @property
    def proxy_host(self) -> str:
        """Address the proxy listens on."""
        return self._config.get("proxy_host", "127.0.0.1")

    @property
    def proxy_port(self) -> int:
        """Get the proxy port (0 = ephemeral)."""
        return int(self._config.get("proxy_port", 0))

    @proxy_port.setter
    def proxy_port(self, value: int):
        """Set the proxy port."""
        self._config["proxy_port"] = value
        self.save()

    @property
    def bridge_port(self) -> int:
        """Get the in-sandbox bridge port."""
        return int(self._config.get("bridge_port", 3128))

    @bridge_port.setter
    def bridge_port(self, value: int):
        """Set the in-sandbox bridge port."""
        if not 0 < int(value) < 65536:
            raise ValueError("bridge_port must be between 1 and 65535")
        self._config["bridge_port"] = int(value)
        self.save()

    @property
    def proxy_start_timeout(self) -> float:
        return float(self._config.get("proxy_start_timeout", 10.0))

    @property
    def proxy_stop_timeout(self) -> float:
        return float(self._config.get("proxy_stop_timeout", 2.0))

    @property
    def reconfigure_timeout(self) -> float:
        return float(self._config.get("reconfigure_timeout", 5.0))

    @property
    def seccomp_override_paths(self) -> Optional[SeccompOverridePaths]:
        """Custom seccomp locations, or None when both use the defaults."""
        bpf_path = self._config.get("seccomp_bpf_path")
        apply_path = self._config.get("seccomp_apply_path")
        if not bpf_path and not apply_path:
            return None
        return SeccompOverridePaths(bpf_path=bpf_path, apply_helper_path=apply_path)

    def set_seccomp_paths(self, bpf_path: Optional[str], apply_path: Optional[str]):
        """Set custom seccomp artifact locations."""
        self._config["seccomp_bpf_path"] = bpf_path
        self._config["seccomp_apply_path"] = apply_path
        self.save()

    def get_status(self) -> dict:
        """Get current settings as a dictionary."""
        return {
            "proxy_host": self.proxy_host,
            "proxy_port": self.proxy_port,
            "bridge_port": self.bridge_port,
            "proxy_start_timeout": self.proxy_start_timeout,
            "proxy_stop_timeout": self.proxy_stop_timeout,
            "reconfigure_timeout": self.reconfigure_timeout,
            "seccomp_bpf_path": self._config.get("seccomp_bpf_path"),
            "seccomp_apply_path": self._config.get("seccomp_apply_path"),
        }
