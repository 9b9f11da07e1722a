"""
Utilities for finding and checking availability of network ports.
"""
import socket


def get_free_port(host: str = "127.0.0.1") -> int:
    """
    Finds a free port on ``host``.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def is_port_free(port: int, host: str = "") -> bool:
    """
    Checks if ``port`` can be bound on ``host`` (all interfaces by default).
    """
    bind_host = "" if host in ("", "0.0.0.0") else host
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((bind_host, port))
            return True
        except OSError:
            return False
