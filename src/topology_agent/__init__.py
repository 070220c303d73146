"""Runtime helpers for the ``netns-topology`` command."""

from .config import load_topology, parse_topology  # noqa: F401
from .options import ProvisionerSettings, load_settings  # noqa: F401

__all__ = [
    "ProvisionerSettings",
    "load_settings",
    "load_topology",
    "parse_topology",
]
