"""Join broker nodes into a cluster."""

import logging

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.broker_management import node_config
from rabbitmq_ct_helpers.utils import ctl

LOGGER = logging.getLogger(__name__)


def join_cluster(
    fleet: fleet_config.FleetConfig,
    node: node_config.NodeConfig,
    seed: node_config.NodeConfig,
) -> fleet_config.Skip | None:
    """Make `node` join the cluster of the `seed` node.

    Return `Skip` when the node couldn't join.
    """
    LOGGER.info(f"Clustering broker node '{node.nodename}' with '{seed.nodename}'.")

    steps: list[tuple[str, list[str]]] = [
        ("stop_app", []),
        ("join_cluster", [seed.nodename]),
        ("start_app", []),
    ]
    for command, args in steps:
        result = ctl.control_action(
            command,
            node.nodename,
            args,
            rabbitmqctl_cmd=fleet.rabbitmqctl_cmd,
        )
        if result != ctl.OK:
            LOGGER.error(f"Clustering failed on `{command}`: {result}")
            return fleet_config.Skip(
                f'Failed to cluster nodes "{node.nodename}" and "{seed.nodename}"'
            )

    return None


def cluster_nodes(fleet: fleet_config.FleetConfig) -> fleet_config.FleetConfig | fleet_config.Skip:
    """Cluster all nodes of an already running fleet with its first node."""
    if not fleet.nodes:
        return fleet

    seed, *rest = fleet.nodes
    for node in rest:
        skip = join_cluster(fleet, node=node, seed=seed)
        if skip is not None:
            return skip

    return fleet


def check_cluster_status(fleet: fleet_config.FleetConfig) -> fleet_config.Skip | None:
    if not fleet.nodes:
        return None

    result = ctl.control_action(
        "cluster_status",
        fleet.nodes[0].nodename,
        rabbitmqctl_cmd=fleet.rabbitmqctl_cmd,
    )
    if result != ctl.OK:
        return fleet_config.Skip("Could not confirm cluster was up and running")
    return None
