"""Start a single broker node.

The launcher goes through the following states:

    ALLOCATING_PORTS -> BUILDING_IDENTITY -> WRITING_CONFIG -> STARTING -> READY

Each step returns a new node record wrapped in one of the step results:

* `Continue` - go to the next step
* `Retry` - the node couldn't start (most likely a port is taken); the node directory is moved
  away and the launcher starts over from `ALLOCATING_PORTS` with a fresh block of ports
* `Fail` - give up, retrying doesn't help

The number of attempts is bounded by `ports.NODE_START_ATTEMPTS`.
"""

import dataclasses
import enum
import logging
import re
import typing as tp

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.broker_management import node_config
from rabbitmq_ct_helpers.broker_management import nodenames
from rabbitmq_ct_helpers.broker_management import ports as ports_mod
from rabbitmq_ct_helpers.utils import helpers

LOGGER = logging.getLogger(__name__)

MAX_PORT = 65535


class LaunchState(enum.Enum):
    ALLOCATING_PORTS = "allocating_ports"
    BUILDING_IDENTITY = "building_identity"
    WRITING_CONFIG = "writing_config"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class Continue:
    node: node_config.NodeConfig


@dataclasses.dataclass(frozen=True)
class Retry:
    node: node_config.NodeConfig
    reason: str


@dataclasses.dataclass(frozen=True)
class Fail:
    reason: str


StepResult = Continue | Retry | Fail


@dataclasses.dataclass(frozen=True)
class LaunchResult:
    index: int
    node: node_config.NodeConfig | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.node is not None and not self.reason


def _make_args(fleet: fleet_config.FleetConfig, targets: tp.Iterable[str]) -> list[str]:
    verbosity = [f"V={fleet.make_verbosity}"] if fleet.make_verbosity else []
    return [fleet.make_cmd, "-C", str(fleet.rabbit_srcdir), *verbosity, *targets]


def get_start_args(fleet: fleet_config.FleetConfig) -> str:
    """Return extra Erlang VM arguments for the broker nodes."""
    args: list[str] = []

    if fleet.erlang_dist_module:
        # The VM adds the `_dist` suffix to the `-proto_dist` value on its own
        proto_dist = re.sub(r"_dist$", "", fleet.erlang_dist_module)
        args.extend(["-pa", f'"{fleet.erlang_dist_module_path}"', "-proto_dist", proto_dist])

    if fleet.net_ticktime:
        args.extend(["-kernel", "net_ticktime", str(fleet.net_ticktime)])

    return " ".join(args)


def get_start_cmd(fleet: fleet_config.FleetConfig, node: node_config.NodeConfig) -> list[str]:
    assert node.ports is not None
    return _make_args(
        fleet,
        [
            "start-background-broker",
            f"RABBITMQ_NODENAME={node.nodename}",
            f"RABBITMQ_DIST_PORT={node.ports.erlang_dist}",
            f"RABBITMQ_CONFIG_FILE={node.config_filename}",
            f"RABBITMQ_SERVER_START_ARGS={get_start_args(fleet)}",
            f"TEST_TMPDIR={fleet.priv_dir}",
        ],
    )


def get_stop_cmd(fleet: fleet_config.FleetConfig, node: node_config.NodeConfig) -> list[str]:
    return _make_args(
        fleet,
        [
            "stop-rabbit-on-node",
            "stop-node",
            f"RABBITMQ_NODENAME={node.nodename}",
            f"TEST_TMPDIR={fleet.priv_dir}",
        ],
    )


def stop_node(fleet: fleet_config.FleetConfig, node: node_config.NodeConfig) -> None:
    """Stop the broker node. Failures are logged and otherwise ignored."""
    LOGGER.info(f"Stopping broker node '{node.nodename}'.")
    try:
        out = helpers.run_command_out(get_stop_cmd(fleet, node))
    except OSError as exc:
        LOGGER.warning(f"Failed to stop broker node '{node.nodename}': {exc}")
        return

    if out.returncode != 0:
        LOGGER.warning(
            f"Stopping broker node '{node.nodename}' failed with exit code {out.returncode}: "
            f"{out.stderr.decode(errors='replace').strip()}"
        )


class NodeLauncher:
    """Start the node with the given index of the fleet."""

    def __init__(self, fleet: fleet_config.FleetConfig, index: int) -> None:
        self.fleet = fleet
        self.index = index
        self.state = LaunchState.ALLOCATING_PORTS

    def _allocate_ports(self, node: node_config.NodeConfig) -> StepResult:
        prior_base = node.ports.base if node.ports else None
        ports = ports_mod.allocate(self.fleet, node_index=self.index, prior_base=prior_base)
        if ports.as_range().stop > MAX_PORT:
            return Fail(f"Ran out of TCP ports for node #{self.index} (base {ports.base})")

        overlay = node_config.merge_app_env(
            node.erlang_node_config, ports_mod.listeners_config(ports)
        )
        return Continue(dataclasses.replace(node, ports=ports, erlang_node_config=overlay))

    def _build_identity(self, node: node_config.NodeConfig) -> StepResult:
        assert node.ports is not None
        nodename = nodenames.build_nodename(
            port_base=node.ports.base, index=self.index, suffix=self.fleet.nodename_suffix
        )
        return Continue(dataclasses.replace(node, nodename=nodename))

    def _write_config(self, node: node_config.NodeConfig) -> StepResult:
        # Set the config location first, so the node directory can be moved away on failure
        node = dataclasses.replace(
            node,
            config_filename=node_config.get_config_filename(
                priv_dir=self.fleet.priv_dir, nodename=node.nodename
            ),
        )
        try:
            node_config.materialize(
                base_config=self.fleet.erlang_node_config,
                overlay=node.erlang_node_config,
                nodename=node.nodename,
                priv_dir=self.fleet.priv_dir,
            )
        except OSError as exc:
            return Retry(node, str(exc))
        return Continue(node)

    def _start(self, node: node_config.NodeConfig) -> StepResult:
        if not self.fleet.rabbit_srcdir:
            return Fail("The broker source directory is not set")

        LOGGER.info(f"Starting broker node '{node.nodename}'.")
        try:
            out = helpers.run_command_out(get_start_cmd(self.fleet, node))
        except OSError as exc:
            return Fail(f"Failed to run `{self.fleet.make_cmd}`: {exc}")

        if out.returncode != 0:
            LOGGER.debug(
                f"Start of '{node.nodename}' failed:\n"
                f"{out.stdout.decode(errors='replace')}{out.stderr.decode(errors='replace')}"
            )
            return Retry(node, "Failed to initialize RabbitMQ")

        return Continue(node)

    def _run_attempt(self, node: node_config.NodeConfig) -> StepResult:
        steps: tuple[tuple[LaunchState, tp.Callable[[node_config.NodeConfig], StepResult]], ...] = (
            (LaunchState.ALLOCATING_PORTS, self._allocate_ports),
            (LaunchState.BUILDING_IDENTITY, self._build_identity),
            (LaunchState.WRITING_CONFIG, self._write_config),
            (LaunchState.STARTING, self._start),
        )

        result: StepResult = Continue(node)
        for state, step in steps:
            self.state = state
            result = step(node)
            if not isinstance(result, Continue):
                return result
            node = result.node

        return result

    def run(self) -> LaunchResult:
        node = node_config.NodeConfig(index=self.index)
        reason = ""

        while node.failed_boot_attempts < ports_mod.NODE_START_ATTEMPTS:
            result = self._run_attempt(node)

            if isinstance(result, Continue):
                self.state = LaunchState.READY
                LOGGER.info(f"Broker node '{result.node.nodename}' is up.")
                return LaunchResult(index=self.index, node=result.node)

            if isinstance(result, Fail):
                self.state = LaunchState.FAILED
                LOGGER.error(f"Failed to start broker node #{self.index}: {result.reason}")
                return LaunchResult(index=self.index, reason=result.reason)

            reason = result.reason
            node = dataclasses.replace(
                node_config.move_nodedir_away(result.node),
                failed_boot_attempts=result.node.failed_boot_attempts + 1,
            )
            LOGGER.warning(
                f"Failed to start broker node '{result.node.nodename}' "
                f"(attempt {node.failed_boot_attempts}): {reason}"
            )

        self.state = LaunchState.FAILED
        LOGGER.error(
            f"Giving up on broker node #{self.index} after {node.failed_boot_attempts} attempts."
        )
        return LaunchResult(index=self.index, reason=reason)
