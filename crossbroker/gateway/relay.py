"""
Network Interposition Gateway - SOCKS5 relay into a broker topology

A protocol-unaware byte relay (RFC 1928, CONNECT with no authentication)
bound to one external endpoint. Destinations are rewritten through a route
table so internal broker names reach their published listeners. Every failed
upstream dial is recorded for the report.
"""
import logging
import socket
import socketserver
import struct
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from ..errors import InfrastructureFailure
from ..interfaces import IGateway
from ..utils.net_utils import is_port_open

logger = logging.getLogger(__name__)

SOCKS_VERSION = 5
METHOD_NO_AUTH = 0x00
METHOD_UNACCEPTABLE = 0xFF
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REPLY_SUCCEEDED = 0x00
REPLY_GENERAL_FAILURE = 0x01
REPLY_HOST_UNREACHABLE = 0x04
REPLY_CONNECTION_REFUSED = 0x05
REPLY_COMMAND_NOT_SUPPORTED = 0x07
REPLY_ADDRESS_NOT_SUPPORTED = 0x08

RELAY_CHUNK = 65536


@dataclass
class DialFailure:
    """A destination the gateway could not reach"""
    destination: str
    reason: str
    routed: bool  # True when the destination belongs to the topology
    timestamp: float


class SocksProtocolError(Exception):
    pass


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise SocksProtocolError("Connection closed during handshake")
        data += chunk
    return data


def _reply(code: int, bound: Tuple[str, int] = ("0.0.0.0", 0)) -> bytes:
    try:
        address = socket.inet_aton(bound[0])
    except OSError:
        address = socket.inet_aton("0.0.0.0")
    return struct.pack("!BBBB", SOCKS_VERSION, code, 0, ATYP_IPV4) + address + struct.pack("!H", bound[1])


class Socks5Handler(socketserver.BaseRequestHandler):
    """Handles one client stream: handshake, dial, then relay until either side closes"""

    def handle(self):
        gateway: "NetworkGateway" = self.server.gateway
        client = self.request
        gateway._register(client)
        try:
            destination = self._handshake(client)
            if destination is None:
                return
            upstream = self._dial(client, destination)
            if upstream is None:
                return
            gateway._register(upstream)
            try:
                self._relay(client, upstream)
            finally:
                gateway._unregister(upstream)
                upstream.close()
        except SocksProtocolError as e:
            logger.debug(f"SOCKS handshake from {self.client_address} rejected: {e}")
        except OSError as e:
            logger.debug(f"Stream from {self.client_address} closed: {e}")
        finally:
            gateway._unregister(client)

    def _handshake(self, client: socket.socket) -> Optional[Tuple[str, int]]:
        version, nmethods = struct.unpack("!BB", _recv_exact(client, 2))
        if version != SOCKS_VERSION:
            raise SocksProtocolError(f"Unsupported SOCKS version {version}")
        methods = _recv_exact(client, nmethods)
        if METHOD_NO_AUTH not in methods:
            client.sendall(struct.pack("!BB", SOCKS_VERSION, METHOD_UNACCEPTABLE))
            raise SocksProtocolError("Client offered no acceptable auth method")
        client.sendall(struct.pack("!BB", SOCKS_VERSION, METHOD_NO_AUTH))

        version, command, _, address_type = struct.unpack("!BBBB", _recv_exact(client, 4))
        if address_type == ATYP_IPV4:
            host = socket.inet_ntoa(_recv_exact(client, 4))
        elif address_type == ATYP_DOMAIN:
            length = _recv_exact(client, 1)[0]
            host = _recv_exact(client, length).decode("idna")
        elif address_type == ATYP_IPV6:
            host = socket.inet_ntop(socket.AF_INET6, _recv_exact(client, 16))
        else:
            client.sendall(_reply(REPLY_ADDRESS_NOT_SUPPORTED))
            raise SocksProtocolError(f"Unsupported address type {address_type}")
        port = struct.unpack("!H", _recv_exact(client, 2))[0]

        if command != CMD_CONNECT:
            client.sendall(_reply(REPLY_COMMAND_NOT_SUPPORTED))
            raise SocksProtocolError(f"Unsupported command {command}")
        return host, port

    def _dial(self, client: socket.socket, destination: Tuple[str, int]) -> Optional[socket.socket]:
        gateway: "NetworkGateway" = self.server.gateway
        requested = f"{destination[0]}:{destination[1]}"
        target, routed = gateway.resolve(destination[0], destination[1])
        try:
            upstream = socket.create_connection(target, timeout=gateway.dial_timeout)
        except socket.gaierror as e:
            gateway._record_failure(requested, f"unresolvable: {e}", routed)
            client.sendall(_reply(REPLY_HOST_UNREACHABLE))
            return None
        except ConnectionRefusedError as e:
            gateway._record_failure(requested, f"refused: {e}", routed)
            client.sendall(_reply(REPLY_CONNECTION_REFUSED))
            return None
        except OSError as e:
            gateway._record_failure(requested, f"unreachable: {e}", routed)
            client.sendall(_reply(REPLY_HOST_UNREACHABLE if isinstance(e, socket.timeout) else REPLY_GENERAL_FAILURE))
            return None

        upstream.settimeout(None)
        client.sendall(_reply(REPLY_SUCCEEDED, upstream.getsockname()[:2]))
        gateway._count_connection()
        logger.debug(f"Relaying {self.client_address} -> {requested} via {target[0]}:{target[1]}")
        return upstream

    def _relay(self, client: socket.socket, upstream: socket.socket) -> None:
        gateway: "NetworkGateway" = self.server.gateway
        reverse = threading.Thread(
            target=self._pump, args=(upstream, client, gateway, 'bytes_downstream'), daemon=True
        )
        reverse.start()
        self._pump(client, upstream, gateway, 'bytes_upstream')
        reverse.join()

    @staticmethod
    def _pump(source: socket.socket, sink: socket.socket, gateway: "NetworkGateway", counter: str) -> None:
        try:
            while True:
                data = source.recv(RELAY_CHUNK)
                if not data:
                    break
                sink.sendall(data)
                gateway._count_bytes(counter, len(data))
        except OSError:
            pass  # Peer reset; the other direction notices on its own
        finally:
            try:
                sink.shutdown(socket.SHUT_WR)
            except OSError:
                pass


class RelayServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, gateway: "NetworkGateway"):
        self.gateway = gateway
        super().__init__(server_address, Socks5Handler)


class NetworkGateway(IGateway):
    """In-process SOCKS5 gateway with a destination route table"""

    def __init__(self, host: str = "127.0.0.1", port: int = 0,
                 routes: Optional[Dict[str, Tuple[str, int]]] = None,
                 dial_timeout: float = 5.0, ready_timeout: float = 5.0):
        self.host = host
        self.port = port
        self.routes: Dict[str, Tuple[str, int]] = dict(routes or {})
        self.dial_timeout = dial_timeout
        self.ready_timeout = ready_timeout
        self.failures: List[DialFailure] = []
        self.stats = {'connections': 0, 'bytes_upstream': 0, 'bytes_downstream': 0}
        self._server: Optional[RelayServer] = None
        self._thread: Optional[threading.Thread] = None
        self._open_sockets = set()
        self._lock = threading.Lock()

    @property
    def address(self) -> Optional[str]:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return f"{host}:{port}"

    def add_routes(self, routes: Dict[str, Tuple[str, int]]) -> None:
        with self._lock:
            self.routes.update(routes)

    def resolve(self, host: str, port: int) -> Tuple[Tuple[str, int], bool]:
        """Rewrite a requested destination; returns (dial target, routed)"""
        with self._lock:
            routed = self.routes.get(f"{host}:{port}")
            if routed is None:
                # Published listeners are topology destinations too
                routed_targets = set(self.routes.values())
                return (host, port), (host, port) in routed_targets
        return routed, True

    def start(self) -> str:
        if self._server is not None:
            return self.address
        try:
            self._server = RelayServer((self.host, self.port), self)
        except OSError as e:
            raise InfrastructureFailure(f"Gateway could not bind {self.host}:{self.port}: {e}", component="gateway")

        self._thread = threading.Thread(target=self._server.serve_forever, name="socks5-gateway", daemon=True)
        self._thread.start()

        host, port = self._server.server_address[:2]
        deadline = time.time() + self.ready_timeout
        while not is_port_open(host, port, timeout=1.0):
            if time.time() >= deadline:
                self.stop()
                raise InfrastructureFailure(f"Gateway on {host}:{port} did not become ready", component="gateway")
            time.sleep(0.05)

        logger.info(f"Gateway listening on {self.address} with {len(self.routes)} routes")
        return self.address

    def stop(self) -> None:
        with self._lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
            if server is None:
                return
            sockets = list(self._open_sockets)
            self._open_sockets.clear()
        host, port = server.server_address[:2]
        server.shutdown()
        server.server_close()
        for sock in sockets:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info(f"Gateway on {host}:{port} stopped ({self.stats['connections']} streams relayed)")

    @property
    def relay_failures(self) -> List[DialFailure]:
        """Dial failures towards destinations inside the topology"""
        with self._lock:
            return [failure for failure in self.failures if failure.routed]

    @property
    def unroutable(self) -> List[DialFailure]:
        with self._lock:
            return [failure for failure in self.failures if not failure.routed]

    def failure_summary(self) -> Dict[str, object]:
        return {
            'relay_failures': [f"{f.destination}: {f.reason}" for f in self.relay_failures],
            'unroutable': sorted({f.destination for f in self.unroutable}),
            'stats': dict(self.stats),
        }

    def _record_failure(self, destination: str, reason: str, routed: bool) -> None:
        with self._lock:
            self.failures.append(DialFailure(destination, reason, routed, time.time()))
        if routed:
            logger.warning(f"Gateway could not reach topology destination {destination}: {reason}")
        else:
            logger.debug(f"Gateway could not reach {destination}: {reason}")

    def _count_connection(self) -> None:
        with self._lock:
            self.stats['connections'] += 1

    def _count_bytes(self, counter: str, size: int) -> None:
        with self._lock:
            self.stats[counter] += size

    def _register(self, sock: socket.socket) -> None:
        with self._lock:
            self._open_sockets.add(sock)

    def _unregister(self, sock: socket.socket) -> None:
        with self._lock:
            self._open_sockets.discard(sock)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
