"""Backends that carry planned operations to the OS."""

from .base import NetworkBackend  # noqa: F401
from .netlink import NetlinkBackend  # noqa: F401
from .shell import NamespaceCommandRunner  # noqa: F401

__all__ = [
    "NamespaceCommandRunner",
    "NetlinkBackend",
    "NetworkBackend",
]
