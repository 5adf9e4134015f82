"""
Socket utilities for readiness probing and address handling
"""
import logging
import socket
import time
from contextlib import contextmanager
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@contextmanager
def tcp_connection(host: str, port: int, timeout: float):
    sock = None
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        yield sock
    finally:
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass  # Ignore errors during cleanup


def is_port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    try:
        with tcp_connection(host, port, timeout):
            return True
    except OSError:
        return False


def wait_for_port(host: str, port: int, timeout: float, interval: float = 0.5,
                  abort_check: Optional[Callable[[], bool]] = None) -> bool:
    """
    Poll until host:port accepts TCP connections.

    abort_check is evaluated between attempts; returning True stops waiting
    early (e.g. the owning container exited).
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        if is_port_open(host, port, timeout=min(2.0, max(0.1, deadline - time.time()))):
            return True
        if abort_check is not None and abort_check():
            logger.debug(f"Stopped waiting for {host}:{port}, abort condition met")
            return False
        time.sleep(interval)
    return False


def find_free_port(host: str = '127.0.0.1') -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]
