import pathlib as pl
import typing as tp

import pytest

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import ctl
from rabbitmq_ct_helpers.utils import helpers

from framework_tests import fakes


@pytest.fixture
def fake_host(monkeypatch: pytest.MonkeyPatch) -> fakes.FakeBrokerHost:
    host = fakes.FakeBrokerHost()
    monkeypatch.setattr(helpers, "run_command_out", host)
    return host


@pytest.fixture
def fleet_cfg(tmp_path: pl.Path) -> fleet_config.FleetConfig:
    priv_dir = tmp_path / "priv"
    priv_dir.mkdir()
    return fleet_config.FleetConfig(
        priv_dir=priv_dir,
        rabbit_srcdir=tmp_path / "rabbitmq-server",
        make_cmd=fakes.MAKE_CMD,
        make_verbosity=0,
        rabbitmqctl_cmd=fakes.RABBITMQCTL_CMD,
        nodes_count=1,
        clustered=False,
        tcp_ports_base=None,
        nodename_suffix="",
        erlang_dist_module="",
        erlang_dist_module_path="",
        net_ticktime=None,
    )


@pytest.fixture(autouse=True)
def reset_net_ticktime() -> tp.Generator[None, None, None]:
    yield
    ctl.apply_net_ticktime(None)


@pytest.fixture(autouse=True)
def no_helpers_ebin_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(configuration, "HELPERS_EBIN_DIR", "")
