"""oslo.config options for the provisioning CLI.

Options live in the ``[provisioner]`` group of the INI file passed through
``--config-file``.  Command line flags override the file values.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from oslo_config import cfg

GROUP = "provisioner"

provisioner_opts = [
    cfg.IntOpt('max_retries',
               default=3,
               min=0,
               help='How many times an operation failing with a transient '
                    'error is retried before the apply is aborted.'),
    cfg.FloatOpt('retry_interval',
                 default=0.5,
                 min=0,
                 help='Seconds to wait between retries of a transient '
                      'failure.'),
    cfg.IntOpt('workers',
               default=1,
               min=1,
               help='Number of threads used to apply independent '
                    'operations. 1 applies them one at a time in plan '
                    'order.'),
    cfg.FloatOpt('command_timeout',
                 default=10.0,
                 min=0,
                 help='Timeout in seconds for sysctl, iptables and ethtool '
                      'invocations.'),
    cfg.StrOpt('ip_command',
               default='ip',
               help='Path to the iproute2 "ip" binary used for '
                    '"ip netns exec".'),
    cfg.StrOpt('iptables_command',
               default='iptables',
               help='Path to the iptables binary.'),
    cfg.StrOpt('ethtool_command',
               default='ethtool',
               help='Path to the ethtool binary.'),
    cfg.StrOpt('lock_path',
               default='/run/netns-topology.lock',
               help='Lock file that serialises apply and teardown runs on '
                    'this host.'),
]


def register_opts(conf: cfg.ConfigOpts) -> None:
    """Register the provisioner options on ``conf``."""
    conf.register_opts(provisioner_opts, group=GROUP)


def list_opts():
    """Entry point for oslo-config-generator."""
    return [(GROUP, provisioner_opts)]


def build_conf(config_file: Optional[Path] = None) -> cfg.ConfigOpts:
    """Return a fresh ``ConfigOpts`` loaded from ``config_file``.

    Raises :class:`oslo_config.cfg.Error` when the file is missing or holds
    values that do not parse.
    """
    conf = cfg.ConfigOpts()
    register_opts(conf)
    files = [str(config_file)] if config_file is not None else []
    conf(args=[], project="netns-topology", default_config_files=files)
    return conf


@dataclass(frozen=True)
class ProvisionerSettings:
    max_retries: int
    retry_interval: float
    workers: int
    command_timeout: float
    ip_command: str
    iptables_command: str
    ethtool_command: str
    lock_path: Path


def load_settings(
    config_file: Optional[Path] = None,
    *,
    workers: Optional[int] = None,
) -> ProvisionerSettings:
    """Read the ``[provisioner]`` group, applying command line overrides.

    Values are read eagerly so malformed entries surface here as
    :class:`oslo_config.cfg.Error` rather than half way through an apply.
    """
    conf = build_conf(config_file)
    if workers is not None:
        conf.set_override('workers', workers, group=GROUP)
    group = conf[GROUP]
    return ProvisionerSettings(
        max_retries=group.max_retries,
        retry_interval=group.retry_interval,
        workers=group.workers,
        command_timeout=group.command_timeout,
        ip_command=group.ip_command,
        iptables_command=group.iptables_command,
        ethtool_command=group.ethtool_command,
        lock_path=Path(group.lock_path),
    )
