import dataclasses
import time
import typing as tp

import pytest

from rabbitmq_ct_helpers.broker_management import clustering
from rabbitmq_ct_helpers.broker_management import fleet as fleet_mod
from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.utils import ctl

from framework_tests import fakes

EVENT_TIMEOUT = 10
# Lets the fleet supervisor collect the node that finished starting first
STAGGER_DELAY = 0.3

NODE1 = "rmq-ct-1-21000@localhost"
NODE2 = "rmq-ct-2-21050@localhost"
NODE3 = "rmq-ct-3-21100@localhost"


def _after_start_of(host: fakes.FakeBrokerHost, index: int) -> tp.Callable[[], None]:
    def _hook() -> None:
        assert host.started_events[index].wait(EVENT_TIMEOUT)
        time.sleep(STAGGER_DELAY)

    return _hook


def _missing_ctl_on(command: str) -> fakes.CtlHandlerType:
    """Return handler that fails like a missing `rabbitmqctl` executable on the given command."""

    def _handle(nodename: str, cmd: str, args: list[str]) -> tuple[int, str] | None:
        if cmd == command:
            raise FileNotFoundError(fakes.RABBITMQCTL_CMD)
        return None

    return _handle


def _after_join_of(host: fakes.FakeBrokerHost, index: int) -> tp.Callable[[], None]:
    def _hook() -> None:
        assert host.joined_events[index].wait(EVENT_TIMEOUT)

    return _hook


class TestStartFleet:
    def test_single_node(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        started = fleet_mod.start_fleet(fleet_cfg)

        assert isinstance(started, fleet_config.FleetConfig)
        assert [n.nodename for n in started.nodes] == [NODE1]
        assert fake_host.running == {NODE1}
        # The input config is not modified
        assert not fleet_cfg.nodes

    def test_sorted_regardless_of_completion_order(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=3)
        # Node 3 finishes first, node 1 last
        fake_host.start_hooks = {
            1: _after_start_of(fake_host, 2),
            0: _after_start_of(fake_host, 1),
        }

        started = fleet_mod.start_fleet(fleet)

        assert isinstance(started, fleet_config.FleetConfig)
        assert [n.nodename for n in started.nodes] == [NODE1, NODE2, NODE3]
        assert [n.index for n in started.nodes] == [0, 1, 2]
        assert fake_host.start_attempts == [NODE3, NODE2, NODE1]
        assert not fake_host.calls("join_cluster")

    def test_nodes_ports_disjoint(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=4)
        fake_host.taken_bases = {21000, 21005, 21050}

        started = fleet_mod.start_fleet(fleet)

        assert isinstance(started, fleet_config.FleetConfig)
        used_ports = [p for n in started.nodes for p in n.ports.as_range()]  # type: ignore
        assert len(used_ports) == len(set(used_ports)) == 4 * 5
        assert fleet_config.get_node_configs(started, "ports_base") == [21010, 21055, 21100, 21150]

    def test_clustered(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2, clustered=True)
        fake_host.start_hooks = {1: _after_start_of(fake_host, 0)}

        started = fleet_mod.start_fleet(fleet)

        assert isinstance(started, fleet_config.FleetConfig)
        assert [c.command for c in fake_host.ctl_calls if c.nodename == NODE2] == [
            "stop_app",
            "join_cluster",
            "start_app",
        ]
        assert fake_host.calls("join_cluster")[0].args == [NODE1]
        assert [c.nodename for c in fake_host.calls("cluster_status")] == [NODE1]

    def test_node_start_failure(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=3)
        fake_host.failing_indexes = {1}

        result = fleet_mod.start_fleet(fleet)

        assert result == fleet_config.Skip("Failed to initialize RabbitMQ")
        assert not fake_host.running
        # Every node that started was stopped, late ones as well
        assert sorted(fake_host.stopped) == [NODE1, NODE3]

    def test_join_failure_tears_down_fleet(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=3, clustered=True)
        # Completion order: node 1, node 3, node 2
        fake_host.start_hooks = {
            2: _after_start_of(fake_host, 0),
            1: _after_join_of(fake_host, 2),
        }

        def _ctl_handler(nodename: str, command: str, args: list[str]) -> tuple[int, str] | None:
            if nodename == NODE2 and command == "join_cluster":
                return 70, ""
            return None

        fake_host.ctl_handler = _ctl_handler

        result = fleet_mod.start_fleet(fleet)

        assert result == fleet_config.Skip(f'Failed to cluster nodes "{NODE2}" and "{NODE1}"')
        assert sorted(fake_host.stopped) == [NODE1, NODE2, NODE3]
        assert not fake_host.running
        assert not fake_host.calls("cluster_status")

    def test_cluster_status_failure(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2, clustered=True)
        fake_host.ctl_handler = lambda n, cmd, a: (69, "") if cmd == "cluster_status" else None

        result = fleet_mod.start_fleet(fleet)

        assert result == fleet_config.Skip("Could not confirm cluster was up and running")
        assert not fake_host.running

    def test_join_crash_tears_down_fleet(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2, clustered=True)
        fake_host.start_hooks = {1: _after_start_of(fake_host, 0)}
        fake_host.ctl_handler = _missing_ctl_on("stop_app")

        result = fleet_mod.start_fleet(fleet)

        assert result == fleet_config.Skip(f'Failed to cluster nodes "{NODE2}" and "{NODE1}"')
        assert sorted(fake_host.stopped) == [NODE1, NODE2]
        assert not fake_host.running

    def test_cluster_status_crash_tears_down_fleet(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2, clustered=True)
        fake_host.ctl_handler = _missing_ctl_on("cluster_status")

        result = fleet_mod.start_fleet(fleet)

        assert result == fleet_config.Skip("Could not confirm cluster was up and running")
        assert not fake_host.running

    def test_net_ticktime(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2, clustered=True, net_ticktime=5)
        fake_host.start_hooks = {1: _after_start_of(fake_host, 0)}

        fleet_mod.start_fleet(fleet)

        assert ctl.get_net_ticktime() == 5
        assert fake_host.ctl_calls
        for call in fake_host.ctl_calls:
            assert call.env == {"RABBITMQ_CTL_ERL_ARGS": "-kernel net_ticktime 5"}

    def test_invalid_nodes_count(self, fleet_cfg: fleet_config.FleetConfig):
        with pytest.raises(ValueError, match="Invalid number of broker nodes"):
            fleet_mod.start_fleet(dataclasses.replace(fleet_cfg, nodes_count=0))


class TestStopFleet:
    def test_stop_idempotent(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        started = fleet_mod.start_fleet(dataclasses.replace(fleet_cfg, nodes_count=2))
        assert isinstance(started, fleet_config.FleetConfig)

        stopped = fleet_mod.stop_fleet(started)
        assert stopped.nodes == []
        assert sorted(fake_host.stopped) == [NODE1, NODE2]

        fleet_mod.stop_fleet(stopped)
        assert len(fake_host.stopped) == 2
        assert not fake_host.running


class TestSteps:
    def test_setup_and_teardown(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fleet = dataclasses.replace(fleet_cfg, nodes_count=2)

        started = fleet_mod.run_steps(fleet, fleet_mod.setup_steps())

        assert isinstance(started, fleet_config.FleetConfig)
        evals = fake_host.calls("eval")
        assert sorted(c.nodename for c in evals) == [NODE1, NODE2]
        for call in evals:
            assert "dist_and_proxy_ports_map" in call.args[0]
            assert "[{21003,21004},{21053,21054}]" in call.args[0]

        stopped = fleet_mod.run_steps(started, fleet_mod.teardown_steps())
        assert isinstance(stopped, fleet_config.FleetConfig)
        assert not stopped.nodes
        assert not fake_host.running

    def test_share_ports_map_failure(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fake_host.ctl_handler = lambda n, cmd, a: (0, "{error,nope}") if cmd == "eval" else None

        result = fleet_mod.run_steps(fleet_cfg, fleet_mod.setup_steps())

        assert result == fleet_config.Skip("Failed to share the distribution ports map")
        assert not fake_host.running

    def test_share_ports_map_crash(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ):
        fake_host.ctl_handler = _missing_ctl_on("eval")

        result = fleet_mod.run_steps(fleet_cfg, fleet_mod.setup_steps())

        assert result == fleet_config.Skip("Failed to share the distribution ports map")
        assert fake_host.stopped == [NODE1]
        assert not fake_host.running

    def test_stops_on_skip(self, fleet_cfg: fleet_config.FleetConfig):
        called = []

        def _skip(fleet: fleet_config.FleetConfig) -> fleet_config.Skip:
            called.append("skip")
            return fleet_config.Skip("nope")

        def _never(fleet: fleet_config.FleetConfig) -> fleet_config.FleetConfig:
            called.append("never")
            return fleet

        assert fleet_mod.run_steps(fleet_cfg, [_skip, _never]) == fleet_config.Skip("nope")
        assert called == ["skip"]


class TestClusterNodes:
    @pytest.fixture
    def started(
        self, fake_host: fakes.FakeBrokerHost, fleet_cfg: fleet_config.FleetConfig
    ) -> fleet_config.FleetConfig:
        started = fleet_mod.start_fleet(dataclasses.replace(fleet_cfg, nodes_count=3))
        assert isinstance(started, fleet_config.FleetConfig)
        return started

    def test_join_first_node(
        self, fake_host: fakes.FakeBrokerHost, started: fleet_config.FleetConfig
    ):
        assert clustering.cluster_nodes(started) is started

        joins = fake_host.calls("join_cluster")
        assert [c.nodename for c in joins] == [NODE2, NODE3]
        assert {c.args[0] for c in joins} == {NODE1}

    def test_join_failure(
        self, fake_host: fakes.FakeBrokerHost, started: fleet_config.FleetConfig
    ):
        fake_host.ctl_handler = lambda n, cmd, a: (1, "") if n == NODE3 else None

        result = clustering.cluster_nodes(started)

        assert result == fleet_config.Skip(f'Failed to cluster nodes "{NODE3}" and "{NODE1}"')
        # Nodes are left for the caller to stop
        assert len(fake_host.running) == 3
