"""
Domain-filtering HTTP/HTTPS proxy.

Runs as its own OS process (``python -m sandbox_runtime.network_proxy``) and
is driven over a line-oriented JSON control channel:

- stdin  <- {"op": "configure", "seq": n, "allowed_domains": [...], "denied_domains": [...]}
- stdin  <- {"op": "shutdown"}
- stdout -> {"event": "ready", "host": ..., "port": ..., "socket": ...}
- stdout -> {"event": "ack", "seq": n}
- stdout -> {"event": "error", "message": ...}

The proxy refuses every connection until its first configure message and
exits when stdin reaches EOF, so it never outlives its supervisor.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import urllib.parse
from typing import Optional

from .domain_filter import DomainFilter, normalize_host
from .tls import extract_sni

logger = logging.getLogger(__name__)

# How long to wait for a client's first bytes inside a CONNECT tunnel
SNI_PEEK_TIMEOUT = 5.0
MAX_HEADER_LINES = 100

_HOP_BY_HOP_HEADERS = {b"proxy-connection", b"proxy-authorization", b"proxy-authenticate"}


def split_host_port(value: str, default_port: int) -> tuple[str, int]:
    """Split "host:port", "[v6]:port" or "host" into (host, port)."""
    value = (value or "").strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        host, port = value, ""
    try:
        return host, int(port) if port else default_port
    except ValueError:
        return host, default_port


class NetworkProxyServer:
    """
    HTTP/HTTPS proxy server for sandboxed network access.

    Every connection attempt is checked against the current DomainFilter:
    the CONNECT target or Host header first, then the TLS SNI when the
    tunnel carries a ClientHello for a different name.
    """

    def __init__(
        self,
        domain_filter: Optional[DomainFilter] = None,
        host: str = "127.0.0.1",
        port: int = 0,
        socket_path: Optional[str] = None,
    ):
        """
        Initialize the network proxy server.

        Args:
            domain_filter: Rules to enforce (default: refuse everything)
            host: Loopback address to listen on
            port: Port to listen on (0 picks a free port)
            socket_path: Optional unix socket to listen on as well
        """
        self.domain_filter = domain_filter or DomainFilter.revoked()
        self.host = host
        self.port = port
        self.socket_path = socket_path
        self.server: Optional[asyncio.Server] = None
        self.unix_server: Optional[asyncio.Server] = None
        self._running = False

    def set_filter(self, domain_filter: DomainFilter):
        """Swap the rule set; applies to every connection accepted afterwards."""
        self.domain_filter = domain_filter
        logger.info(f"Proxy rules updated: {domain_filter!r}")

    def _is_domain_allowed(self, domain: str) -> bool:
        return self.domain_filter.is_allowed(domain)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        """Handle a client connection."""
        try:
            request_line = await reader.readline()
            if not request_line:
                return

            request_line = request_line.decode("latin-1").strip()
            logger.debug(f"Proxy request: {request_line}")

            parts = request_line.split()
            if len(parts) < 2:
                await self._send_error(writer, 400, "Bad Request")
                return

            method, target = parts[0].upper(), parts[1]
            version = parts[2] if len(parts) > 2 else "HTTP/1.1"
            headers = await self._read_headers(reader)

            if method == "CONNECT":
                domain, port = split_host_port(target, 443)
            else:
                parsed = urllib.parse.urlsplit(target)
                if parsed.hostname:
                    domain, port = parsed.hostname, parsed.port or 80
                else:
                    domain, port = split_host_port(_header_value(headers, b"host"), 80)

            domain = normalize_host(domain)
            if not self._is_domain_allowed(domain):
                logger.warning(f"Blocked request to unauthorized domain: {domain or '<none>'}")
                await self._send_error(
                    writer, 403, "Forbidden", f"Connection to {domain} blocked by network policy"
                )
                return

            if method == "CONNECT":
                await self._handle_connect(reader, writer, domain, port)
            else:
                await self._forward_request(
                    reader, writer, method, target, version, headers, domain, port
                )

        except Exception as e:
            logger.error(f"Error handling proxy client: {e}", exc_info=True)
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _read_headers(self, reader: asyncio.StreamReader) -> list[bytes]:
        headers = []
        for _ in range(MAX_HEADER_LINES):
            line = await reader.readline()
            if not line or line in (b"\r\n", b"\n"):
                break
            headers.append(line)
        return headers

    async def _send_error(
        self,
        writer: asyncio.StreamWriter,
        code: int,
        message: str,
        body: Optional[str] = None,
    ):
        """Send an HTTP error response."""
        body = body or message
        response = (
            f"HTTP/1.1 {code} {message}\r\n"
            f"Content-Type: text/plain\r\n"
            f"X-Proxy-Error: blocked-by-allowlist\r\n"
            f"Content-Length: {len(body) + 2}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}\r\n"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    async def _handle_connect(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        host: str,
        port: int,
    ):
        """Handle HTTPS CONNECT tunnel."""
        target_writer = None
        try:
            target_reader, target_writer = await asyncio.open_connection(host, port)

            client_writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            await client_writer.drain()

            try:
                first_chunk = await asyncio.wait_for(
                    client_reader.read(16384), timeout=SNI_PEEK_TIMEOUT
                )
            except asyncio.TimeoutError:
                # Server-speaks-first protocols send nothing up front
                first_chunk = b""

            sni = extract_sni(first_chunk)
            if sni and normalize_host(sni) != host and not self._is_domain_allowed(sni):
                logger.warning(f"Blocked tunnel to {host}: TLS SNI {sni} not allowed")
                return

            if first_chunk:
                target_writer.write(first_chunk)
                await target_writer.drain()

            await asyncio.gather(
                self._relay_data(client_reader, target_writer, f"client->{host}"),
                self._relay_data(target_reader, client_writer, f"{host}->client"),
                return_exceptions=True,
            )

        except Exception as e:
            logger.error(f"Error in CONNECT tunnel to {host}:{port}: {e}")
        finally:
            if target_writer is not None:
                try:
                    target_writer.close()
                    await target_writer.wait_closed()
                except Exception:
                    pass

    async def _forward_request(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        method: str,
        target: str,
        version: str,
        headers: list[bytes],
        host: str,
        port: int,
    ):
        """Forward a plain HTTP request to the target server."""
        target_writer = None
        try:
            parsed = urllib.parse.urlsplit(target)
            path = parsed.path or "/"
            if parsed.query:
                path = f"{path}?{parsed.query}"
            if not parsed.hostname:
                path = target

            target_reader, target_writer = await asyncio.open_connection(host, port)

            target_writer.write(f"{method} {path} {version}\r\n".encode("latin-1"))
            for line in headers:
                name = line.split(b":", 1)[0].strip().lower()
                if name not in _HOP_BY_HOP_HEADERS:
                    target_writer.write(line)
            target_writer.write(b"\r\n")
            await target_writer.drain()

            # Relay the response and any request body
            await asyncio.gather(
                self._relay_data(client_reader, target_writer, f"client->{host}"),
                self._relay_data(target_reader, client_writer, f"{host}->client"),
                return_exceptions=True,
            )

        except Exception as e:
            logger.error(f"Error forwarding request to {target}: {e}")
        finally:
            if target_writer is not None:
                try:
                    target_writer.close()
                    await target_writer.wait_closed()
                except Exception:
                    pass

    async def _relay_data(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        label: str,
    ):
        """Relay data from reader to writer."""
        try:
            while True:
                data = await reader.read(8192)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
        except Exception as e:
            logger.debug(f"Relay {label} ended: {e}")

    async def start(self):
        """Start the proxy server."""
        if self._running:
            return

        self.server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
        )
        if self.socket_path:
            self.unix_server = await asyncio.start_unix_server(
                self._handle_client,
                path=self.socket_path,
            )

        self._running = True
        host, port = self.listen_address
        logger.info(f"Network proxy started on {host}:{port}")

    async def stop(self):
        """Stop the proxy server."""
        if not self._running:
            return

        self._running = False

        for server in (self.server, self.unix_server):
            if server:
                server.close()
                await server.wait_closed()

        if self.socket_path:
            try:
                os.unlink(self.socket_path)
            except FileNotFoundError:
                pass

        logger.info("Network proxy stopped")

    def is_running(self) -> bool:
        """Check if the proxy is running."""
        return self._running

    @property
    def listen_address(self) -> tuple[str, int]:
        """The bound (host, port) of the TCP listener."""
        if not self.server or not self.server.sockets:
            return self.host, self.port
        address = self.server.sockets[0].getsockname()
        return address[0], address[1]


def _header_value(headers: list[bytes], name: bytes) -> str:
    for line in headers:
        key, _, value = line.partition(b":")
        if key.strip().lower() == name:
            return value.strip().decode("latin-1")
    return ""


def _emit(event: dict):
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


async def serve_control_channel(proxy: NetworkProxyServer, control: asyncio.StreamReader):
    """
    Apply control messages until shutdown or EOF.

    The listener is only bound after the first configure message, so the
    proxy never accepts a connection without rules in place.
    """
    try:
        while True:
            line = await control.readline()
            if not line:
                logger.info("Control channel closed, shutting down proxy")
                break

            try:
                message = json.loads(line)
            except ValueError:
                logger.error(f"Ignoring malformed control message: {line[:200]!r}")
                continue

            op = message.get("op")
            if op == "configure":
                proxy.set_filter(
                    DomainFilter(
                        message.get("allowed_domains") or [],
                        message.get("denied_domains") or [],
                    )
                )
                if not proxy.is_running():
                    await proxy.start()
                    host, port = proxy.listen_address
                    _emit({"event": "ready", "host": host, "port": port,
                           "socket": proxy.socket_path, "pid": os.getpid()})
                _emit({"event": "ack", "seq": message.get("seq")})
            elif op == "shutdown":
                break
            else:
                logger.error(f"Unknown control operation: {op!r}")
    finally:
        await proxy.stop()


async def _run(args) -> int:
    loop = asyncio.get_running_loop()
    control = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(control), sys.stdin)

    proxy = NetworkProxyServer(host=args.host, port=args.port, socket_path=args.socket)
    try:
        await serve_control_channel(proxy, control)
    except OSError as e:
        _emit({"event": "error", "message": str(e)})
        return 1
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Domain-filtering proxy for sandbox-runtime")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--socket", default=None, help="Also listen on this unix socket")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("SRT_DEBUG") else logging.WARNING,
        format="[srt-proxy] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
