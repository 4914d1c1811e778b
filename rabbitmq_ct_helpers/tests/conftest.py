import logging
import shutil
import typing as tp

import pytest
from _pytest.config import Config
from _pytest.tmpdir import TempPathFactory
from pytest_metadata.plugin import metadata_key

from rabbitmq_ct_helpers.broker_management import broker_management
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import temptools

LOGGER = logging.getLogger(__name__)


def pytest_configure(config: Config) -> None:
    config.stash[metadata_key]["RABBITMQ_SRCDIR"] = str(configuration.RABBITMQ_SRCDIR)
    config.stash[metadata_key]["rabbitmqctl exe"] = (
        shutil.which(configuration.RABBITMQCTL_CMD) or configuration.RABBITMQCTL_CMD
    )
    config.stash[metadata_key]["RMQ_NODES_COUNT"] = str(configuration.NODES_COUNT)
    config.stash[metadata_key]["RMQ_CLUSTERED"] = str(configuration.CLUSTERED)
    if configuration.TCP_PORTS_BASE:
        config.stash[metadata_key]["RMQ_TCP_PORTS_BASE"] = str(configuration.TCP_PORTS_BASE)
    if configuration.NET_TICKTIME:
        config.stash[metadata_key]["RMQ_NET_TICKTIME"] = str(configuration.NET_TICKTIME)
    if configuration.DIST_MODULE:
        config.stash[metadata_key]["RMQ_DIST_MODULE"] = configuration.DIST_MODULE

    if not configuration.RABBITMQ_SRCDIR:
        LOGGER.warning(" WARNING: `RABBITMQ_SRCDIR` is not set, broker tests will be skipped!")


@pytest.fixture(scope="session")
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    """Init `PytestTempDirs`."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(scope="session", autouse=True)
def session_autouse(init_pytest_temp_dirs: None) -> None:
    """Autouse session fixtures that are required for session setup and teardown."""


@pytest.fixture(scope="session")
def fleet_manager(
    worker_id: str,
    init_pytest_temp_dirs: None,  # noqa: ARG001
) -> tp.Generator[broker_management.FleetManager, None, None]:
    """Return instance of `broker_management.FleetManager`, stop the fleet at session end."""
    priv_dir = temptools.get_pytest_worker_tmp() / "brokers"
    fleet_manager_obj = broker_management.FleetManager(worker_id=worker_id, priv_dir=priv_dir)
    yield fleet_manager_obj
    fleet_manager_obj.stop()


@pytest.fixture(scope="session")
def fleet(fleet_manager: broker_management.FleetManager) -> broker_management.FleetConfig:
    """Return running broker fleet; skip the tests when the fleet can't be started."""
    if not configuration.RABBITMQ_SRCDIR:
        pytest.skip("`RABBITMQ_SRCDIR` is not set")

    result = fleet_manager.start()
    if isinstance(result, broker_management.Skip):
        pytest.skip(result.reason)

    LOGGER.info(f"Broker nodes of worker '{fleet_manager.worker_id}':")
    for node in result.nodes:
        LOGGER.info(f"  {node.nodename} (AMQP port {node.get('amqp')})")
    return result
