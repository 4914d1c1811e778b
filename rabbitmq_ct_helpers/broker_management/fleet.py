"""Start and stop a fleet of broker nodes.

All nodes are started concurrently, one launcher per node. The results are processed one at
a time, in the order the launchers finish:

* when a node failed to start, the nodes started so far are stopped and the fleet setup is
  aborted; nodes that finish starting later are stopped as they come
* when the fleet is clustered, every node (except the first one to finish) joins the cluster
  of the first node as soon as it is collected
"""

import concurrent.futures
import dataclasses
import logging
import typing as tp

from rabbitmq_ct_helpers.broker_management import clustering
from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.broker_management import launcher
from rabbitmq_ct_helpers.broker_management import node_config
from rabbitmq_ct_helpers.utils import ctl
from rabbitmq_ct_helpers.utils import erlang_terms
from rabbitmq_ct_helpers.utils import framework_log
from rabbitmq_ct_helpers.utils import remote

LOGGER = logging.getLogger(__name__)

StepType = tp.Callable[
    [fleet_config.FleetConfig], fleet_config.FleetConfig | fleet_config.Skip
]


def _get_launch_result(
    future: "concurrent.futures.Future[launcher.LaunchResult]", index: int
) -> launcher.LaunchResult:
    try:
        return future.result()
    except Exception as exc:
        LOGGER.exception(f"Launcher of broker node #{index} crashed.")
        return launcher.LaunchResult(index=index, reason=f"Launcher crashed: {exc}")


def _join_cluster(
    fleet: fleet_config.FleetConfig, node: node_config.NodeConfig, seed: node_config.NodeConfig
) -> fleet_config.Skip | None:
    try:
        return clustering.join_cluster(fleet, node=node, seed=seed)
    except Exception:
        LOGGER.exception(f"Clustering of broker node '{node.nodename}' crashed.")
        return fleet_config.Skip(
            f'Failed to cluster nodes "{node.nodename}" and "{seed.nodename}"'
        )


def _abort(fleet: fleet_config.FleetConfig, nodes: list[node_config.NodeConfig]) -> None:
    stop_fleet(dataclasses.replace(fleet, nodes=list(nodes)))


def start_fleet(
    fleet: fleet_config.FleetConfig,
) -> fleet_config.FleetConfig | fleet_config.Skip:
    """Start `fleet.nodes_count` broker nodes.

    Return new fleet config with the nodes sorted by node name, or `Skip` when the fleet
    couldn't be started. No node is left running in the latter case.
    """
    if fleet.nodes_count < 1:
        msg = f"Invalid number of broker nodes: {fleet.nodes_count}"
        raise ValueError(msg)

    ctl.apply_net_ticktime(fleet.net_ticktime)
    fleet.priv_dir.mkdir(parents=True, exist_ok=True)

    collected: list[node_config.NodeConfig] = []
    failure: fleet_config.Skip | None = None

    LOGGER.info(f"Starting {fleet.nodes_count} broker node(s), clustered: {fleet.clustered}.")
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=fleet.nodes_count, thread_name_prefix="broker_launcher"
    ) as executor:
        futures = {
            executor.submit(launcher.NodeLauncher(fleet, i).run): i
            for i in range(fleet.nodes_count)
        }
        for future in concurrent.futures.as_completed(futures):
            result = _get_launch_result(future, futures[future])

            if failure is not None:
                # The setup was already aborted, don't leave late nodes running
                if result.node is not None:
                    launcher.stop_node(fleet, result.node)
                continue

            if not result.ok or result.node is None:
                failure = fleet_config.Skip(result.reason or "Failed to start broker node")
            else:
                if fleet.clustered and collected:
                    failure = _join_cluster(fleet, node=result.node, seed=collected[0])
                collected.append(result.node)

            if failure is not None:
                LOGGER.error(f"Broker fleet setup failed: {failure.reason}")
                _abort(fleet, collected)
                collected = []

    if failure is not None:
        framework_log.log_event(f"Failed to start broker fleet: {failure.reason}")
        return failure

    started = dataclasses.replace(fleet, nodes=sorted(collected, key=lambda n: n.nodename))

    if fleet.clustered:
        try:
            status_failure = clustering.check_cluster_status(started)
        except Exception:
            LOGGER.exception("Checking the cluster status crashed.")
            status_failure = fleet_config.Skip("Could not confirm cluster was up and running")
        if status_failure is not None:
            framework_log.log_event(f"Failed to start broker fleet: {status_failure.reason}")
            stop_fleet(started)
            return status_failure

    LOGGER.info(f"Broker nodes up: {', '.join(n.nodename for n in started.nodes)}")
    return started


def stop_fleet(fleet: fleet_config.FleetConfig) -> fleet_config.FleetConfig:
    """Stop all nodes of the fleet and clear the list of nodes.

    Calling it again on the same fleet does nothing.
    """
    for node in fleet.nodes:
        launcher.stop_node(fleet, node)
    fleet.nodes = []
    return fleet


def share_dist_and_proxy_ports_map(
    fleet: fleet_config.FleetConfig,
) -> fleet_config.FleetConfig | fleet_config.Skip:
    """Tell every node which proxy port belongs to which distribution port.

    Needed by the proxying distribution module for simulating network partitions.
    The fleet is stopped when any of the nodes can't be configured.
    """
    ports_map = [(n.get("erlang_dist"), n.get("erlang_dist_proxy")) for n in fleet.nodes]
    try:
        results = remote.run_on_all_brokers(
            fleet,
            "application",
            "set_env",
            [
                erlang_terms.Atom("kernel"),
                erlang_terms.Atom("dist_and_proxy_ports_map"),
                ports_map,
            ],
        )
    except Exception as exc:
        LOGGER.exception("Sharing the ports map with the broker nodes crashed.")
        results = [repr(exc)]

    if any(r != erlang_terms.Atom("ok") for r in results):
        LOGGER.error(f"Failed to share the ports map with the broker nodes: {results}")
        framework_log.log_event(f"Failed to share the ports map: {results}")
        stop_fleet(fleet)
        return fleet_config.Skip("Failed to share the distribution ports map")
    return fleet


def setup_steps() -> list[StepType]:
    return [start_fleet, share_dist_and_proxy_ports_map]


def teardown_steps() -> list[StepType]:
    return [stop_fleet]


def run_steps(
    fleet: fleet_config.FleetConfig, steps: tp.Iterable[StepType]
) -> fleet_config.FleetConfig | fleet_config.Skip:
    """Run the steps in order, each one gets the fleet returned by the previous one.

    Stop on the first step that returns `Skip`.
    """
    for step in steps:
        result = step(fleet)
        if isinstance(result, fleet_config.Skip):
            return result
        fleet = result
    return fleet
