"""
Supervision of the filtering proxy process and the network directives
that force sandboxed traffic through it.

The proxy lives in a separate OS process. Rule changes are sent over its
stdin control channel; this module is the only writer and the proxy the
only reader. A proxy that dies is never restarted: the handle is marked
crashed and callers treat network access as revoked.
"""

import json
import logging
import os
import queue
import shutil
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Optional

from .base import NetworkPolicy, ProxyEndpoint
from .errors import ProxyStartFailed

logger = logging.getLogger(__name__)

PROXY_SOCKET_NAME = "proxy.sock"
_EXITED = object()


@dataclass
class ProxyHandle:
    """A running proxy process. Only ProxySupervisor mutates it."""

    pid: int
    listen_address: tuple[str, int]
    socket_path: Optional[str]
    current_allowed_domains: frozenset = frozenset()
    current_denied_domains: frozenset = frozenset()
    crashed: bool = False
    stopped: bool = False

    # Private plumbing
    _process: Optional[subprocess.Popen] = field(default=None, repr=False)
    _events: Optional[queue.Queue] = field(default=None, repr=False)
    _socket_dir: Optional[str] = field(default=None, repr=False)
    _seq: int = field(default=0, repr=False)

    def is_alive(self) -> bool:
        return not (self.crashed or self.stopped)

    def endpoint(self) -> ProxyEndpoint:
        host, port = self.listen_address
        return ProxyEndpoint(host=host, port=port, socket_path=self.socket_path)


def proxy_environment(proxy_url: str) -> dict[str, str]:
    """Environment variables that route HTTP(S) clients through the proxy."""
    return {
        "HTTP_PROXY": proxy_url,
        "HTTPS_PROXY": proxy_url,
        "http_proxy": proxy_url,
        "https_proxy": proxy_url,
        "NO_PROXY": "localhost,127.0.0.1",
        "no_proxy": "localhost,127.0.0.1",
    }


class ProxySupervisor:
    """Starts, reconfigures and stops filtering proxy processes."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        start_timeout: float = 10.0,
        stop_timeout: float = 2.0,
        reconfigure_timeout: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.reconfigure_timeout = reconfigure_timeout
        # Reentrant: stop() can run from a signal handler on a thread that
        # is already inside reconfigure()
        self._lock = threading.RLock()

    def _command(self, socket_path: str) -> list[str]:
        return [
            sys.executable,
            "-m",
            "sandbox_runtime.network_proxy",
            "--host",
            self.host,
            "--port",
            str(self.port),
            "--socket",
            socket_path,
        ]

    def start(self, policy: NetworkPolicy) -> ProxyHandle:
        """
        Launch a proxy enforcing ``policy`` and wait until it is listening.

        Raises:
            ProxyStartFailed: if the process cannot be spawned or is not
                ready within start_timeout
        """
        socket_dir = tempfile.mkdtemp(prefix="srt-proxy-")
        os.chmod(socket_dir, 0o755)
        socket_path = os.path.join(socket_dir, PROXY_SOCKET_NAME)

        try:
            process = subprocess.Popen(
                self._command(socket_path),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            shutil.rmtree(socket_dir, ignore_errors=True)
            raise ProxyStartFailed(f"could not launch proxy process: {e}") from e

        events: queue.Queue = queue.Queue()
        handle = ProxyHandle(
            pid=process.pid,
            listen_address=(self.host, self.port),
            socket_path=socket_path,
            _process=process,
            _events=events,
            _socket_dir=socket_dir,
        )
        threading.Thread(
            target=self._read_events,
            args=(handle,),
            name=f"srt-proxy-{process.pid}",
            daemon=True,
        ).start()

        try:
            self._send(handle, self._configure_message(handle, policy))
            ready = self._wait_for(handle, "ready", self.start_timeout)
        except ProxyStartFailed:
            self._kill(handle)
            raise

        handle.listen_address = (ready["host"], int(ready["port"]))
        handle.current_allowed_domains = frozenset(policy.allowed_domains)
        handle.current_denied_domains = frozenset(policy.denied_domains)
        logger.info(
            f"Filtering proxy {handle.pid} listening on "
            f"{handle.listen_address[0]}:{handle.listen_address[1]} and {socket_path}"
        )
        return handle

    def reconfigure(self, handle: ProxyHandle, policy: NetworkPolicy) -> bool:
        """
        Push new domain lists to a live proxy.

        Returns True once the proxy acknowledged the update; from then on
        every new connection is checked against it. Returns False when the
        proxy is gone (it is not restarted). A live proxy that does not
        acknowledge in time is killed and marked crashed, since it may
        still be enforcing the previous rules.
        """
        with self._lock:
            if not handle.is_alive():
                logger.error(
                    f"Cannot reconfigure proxy {handle.pid}: it is no longer running; "
                    f"network access stays revoked"
                )
                return False

            message = self._configure_message(handle, policy)
            try:
                self._send(handle, message)
                self._wait_for(handle, "ack", self.reconfigure_timeout, seq=message["seq"])
            except ProxyStartFailed as e:
                logger.error(
                    f"Proxy {handle.pid} did not apply new rules: {e}; "
                    f"stopping it and revoking network access"
                )
                self._revoke(handle)
                return False

            handle.current_allowed_domains = frozenset(policy.allowed_domains)
            handle.current_denied_domains = frozenset(policy.denied_domains)
            logger.info(f"Proxy {handle.pid} reconfigured (update #{message['seq']})")
            return True

    def stop(self, handle: Optional[ProxyHandle]) -> None:
        """Terminate the proxy and remove its socket. Idempotent."""
        if handle is None or handle.stopped:
            return

        if not self._lock.acquire(timeout=self.stop_timeout):
            # Another thread is stuck talking to this proxy
            logger.warning(f"Proxy {handle.pid} is busy, killing it")
            self._kill(handle)
            logger.info(f"Filtering proxy {handle.pid} stopped")
            return

        try:
            handle.stopped = True
            process = handle._process
            if process is not None and process.poll() is None:
                # RuntimeError: a signal handler interrupted a write on this pipe
                try:
                    process.stdin.write(json.dumps({"op": "shutdown"}) + "\n")
                    process.stdin.flush()
                except (OSError, ValueError, RuntimeError):
                    pass
                try:
                    process.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Proxy {handle.pid} did not exit, killing it")
                    self._kill(handle)
            self._close_pipes(handle)
            if handle._socket_dir:
                shutil.rmtree(handle._socket_dir, ignore_errors=True)
        finally:
            self._lock.release()
        logger.info(f"Filtering proxy {handle.pid} stopped")

    def _configure_message(self, handle: ProxyHandle, policy: NetworkPolicy) -> dict:
        message = {
            "op": "configure",
            "seq": handle._seq,
            "allowed_domains": sorted(policy.allowed_domains),
            "denied_domains": sorted(policy.denied_domains),
        }
        handle._seq += 1
        return message

    def _send(self, handle: ProxyHandle, message: dict) -> None:
        try:
            handle._process.stdin.write(json.dumps(message) + "\n")
            handle._process.stdin.flush()
        except (OSError, ValueError) as e:
            raise ProxyStartFailed(f"control channel closed: {e}") from e

    def _wait_for(self, handle: ProxyHandle, event: str, timeout: float, seq=None) -> dict:
        while True:
            try:
                message = handle._events.get(timeout=timeout)
            except queue.Empty:
                raise ProxyStartFailed(f"timed out after {timeout}s waiting for {event!r}")
            if message is _EXITED:
                raise ProxyStartFailed(
                    f"proxy exited with status {handle._process.poll()} before {event!r}"
                )
            if message.get("event") == "error":
                raise ProxyStartFailed(message.get("message", "unknown proxy error"))
            if message.get("event") == event and (seq is None or message.get("seq") == seq):
                return message

    def _read_events(self, handle: ProxyHandle) -> None:
        """Drain the proxy's stdout; EOF means the process has exited."""
        process = handle._process
        for line in process.stdout:
            try:
                handle._events.put(json.loads(line))
            except ValueError:
                logger.debug(f"Proxy {handle.pid}: {line.rstrip()}")
        try:
            process.stdout.close()
        except OSError:
            pass

        process.wait()
        if not handle.stopped:
            handle.crashed = True
            logger.error(
                f"Filtering proxy {handle.pid} exited unexpectedly "
                f"(status {process.returncode}); network access is revoked"
            )
        handle._events.put(_EXITED)

    def _kill(self, handle: ProxyHandle) -> None:
        # Before the kill, so the event reader does not report a crash
        handle.stopped = True
        process = handle._process
        if process is not None and process.poll() is None:
            process.kill()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.error(f"Proxy {handle.pid} survived SIGKILL")
        self._close_pipes(handle)
        if handle._socket_dir:
            shutil.rmtree(handle._socket_dir, ignore_errors=True)

    def _revoke(self, handle: ProxyHandle) -> None:
        if not handle.stopped:
            handle.crashed = True
        self._kill(handle)

    def _close_pipes(self, handle: ProxyHandle) -> None:
        process = handle._process
        if process is not None and process.stdin:
            try:
                process.stdin.close()
            except OSError:
                pass
