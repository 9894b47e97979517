"""
Utilities for resolving names and registering entries in a hosts table.
"""
import socket
from typing import Callable


def resolve_address(alias: str, resolver: Callable[[str], str] = socket.gethostbyname) -> str:
    """
    Resolves ``alias`` to an IPv4 address.

    :raises socket.gaierror: If the name does not resolve.
    """
    return resolver(alias)


def has_entry(hosts_path: str, address: str, name: str) -> bool:
    """
    Checks if the hosts table already maps ``name`` to ``address``.
    """
    try:
        with open(hosts_path, 'r') as f:
            for line in f:
                fields = line.split('#', 1)[0].split()
                if len(fields) >= 2 and fields[0] == address and name in fields[1:]:
                    return True
    except FileNotFoundError:
        return False
    return False


def register_host(hosts_path: str, address: str, name: str) -> bool:
    """
    Appends ``<address>\\t<name>`` to the hosts table unless it is already there.

    :return: True if a line was appended.
    """
    if has_entry(hosts_path, address, name):
        return False

    prefix = ''
    try:
        with open(hosts_path, 'rb') as f:
            f.seek(0, 2)
            if f.tell() > 0:
                f.seek(-1, 2)
                if f.read(1) != b'\n':
                    prefix = '\n'
    except FileNotFoundError:
        pass

    with open(hosts_path, 'a') as f:
        f.write(f"{prefix}{address}\t{name}\n")
    return True
