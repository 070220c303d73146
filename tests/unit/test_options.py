from pathlib import Path

import pytest
from oslo_config import cfg

from topology_agent.options import GROUP, list_opts, load_settings


def test_defaults_without_config_file():
    settings = load_settings()

    assert settings.max_retries == 3
    assert settings.retry_interval == pytest.approx(0.5)
    assert settings.workers == 1
    assert settings.command_timeout == pytest.approx(10.0)
    assert settings.ip_command == "ip"
    assert settings.iptables_command == "iptables"
    assert settings.ethtool_command == "ethtool"
    assert settings.lock_path == Path("/run/netns-topology.lock")


def test_values_from_config_file(tmp_path: Path):
    config_path = tmp_path / "netns-topology.conf"
    config_path.write_text(
        """
[provisioner]
max_retries = 5
retry_interval = 0.1
workers = 4
iptables_command = /usr/sbin/iptables-legacy
lock_path = {lock}
""".format(lock=tmp_path / "run.lock")
    )

    settings = load_settings(config_path)

    assert settings.max_retries == 5
    assert settings.retry_interval == pytest.approx(0.1)
    assert settings.workers == 4
    assert settings.iptables_command == "/usr/sbin/iptables-legacy"
    assert settings.lock_path == tmp_path / "run.lock"


def test_command_line_overrides_file(tmp_path: Path):
    config_path = tmp_path / "netns-topology.conf"
    config_path.write_text("[provisioner]\nworkers = 4\n")

    assert load_settings(config_path, workers=2).workers == 2


def test_invalid_value_raises_config_error(tmp_path: Path):
    config_path = tmp_path / "netns-topology.conf"
    config_path.write_text("[provisioner]\nmax_retries = many\n")

    with pytest.raises(cfg.Error):
        load_settings(config_path)


def test_missing_config_file_raises_config_error(tmp_path: Path):
    with pytest.raises(cfg.Error):
        load_settings(tmp_path / "absent.conf")


def test_list_opts_exposes_group():
    ((group, opts),) = list_opts()

    assert group == GROUP
    assert {opt.name for opt in opts} >= {"max_retries", "workers", "lock_path"}
