"""Broker fleet of a pytest worker.

Every pytest worker (when running with `pytest-xdist`) gets its own fleet of broker nodes.
The port blocks of worker N start right after the blocks reserved for the fleets of workers
0..N-1, so fleets of different workers never compete for the same ports.
"""

import logging
import pathlib as pl

from rabbitmq_ct_helpers.broker_management import fleet as fleet_mod
from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.broker_management import ports as ports_mod
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import framework_log
from rabbitmq_ct_helpers.utils import helpers

LOGGER = logging.getLogger(__name__)


def get_worker_index(worker_id: str) -> int:
    """Return index of the pytest worker, `0` when not running with `pytest-xdist`.

    >>> get_worker_index("gw3")
    3
    >>> get_worker_index("master")
    0
    """
    if not worker_id.startswith("gw"):
        return 0
    return int(worker_id[2:])


class FleetManager:
    """Start and stop the broker fleet of a pytest worker."""

    def __init__(self, worker_id: str, priv_dir: pl.Path) -> None:
        self.worker_id = worker_id
        self.priv_dir = priv_dir
        self.fleet: fleet_config.FleetConfig | None = None

    def log(self, msg: str) -> None:
        framework_log.scheduling_log(worker_id=self.worker_id, msg=msg)

    def get_fleet_config(self) -> fleet_config.FleetConfig:
        """Return config of the worker's fleet, with nothing started yet."""
        worker_index = get_worker_index(self.worker_id)
        fleet = fleet_config.FleetConfig.from_configuration(priv_dir=self.priv_dir)

        if fleet.tcp_ports_base is None:
            fleet.tcp_ports_base = ports_mod.SkipNNodes(worker_index * fleet.nodes_count)
        else:
            fleet.tcp_ports_base += worker_index * fleet.nodes_count * ports_mod.NODE_PORTS_SPAN

        if not fleet.nodename_suffix and configuration.IS_XDIST:
            fleet.nodename_suffix = self.worker_id

        return fleet

    def start(self) -> fleet_config.FleetConfig | fleet_config.Skip:
        fleet = self.get_fleet_config()
        self.log(f"starting {fleet.nodes_count} broker node(s) in '{fleet.priv_dir}'")

        result = fleet_mod.run_steps(fleet, fleet_mod.setup_steps())
        if isinstance(result, fleet_config.Skip):
            self.log(f"broker fleet not started: {result.reason}")
            return result

        self.fleet = result
        self.log(f"started broker nodes {[n.nodename for n in result.nodes]}")
        return result

    def stop(self) -> None:
        if self.fleet is None:
            return

        if configuration.KEEP_NODES_RUNNING:
            LOGGER.info("Keeping broker nodes running, they need to be stopped manually.")
            self.log("keeping broker nodes running")
            return

        self.log(f"stopping broker nodes {[n.nodename for n in self.fleet.nodes]}")
        with helpers.ignore_interrupt():
            fleet_mod.run_steps(self.fleet, fleet_mod.teardown_steps())
        self.fleet = None
