"""TCP port numbers of broker nodes.

Every node gets a block of `PORTS_PER_NODE` consecutive ports. Blocks of different node indices
are `PORTS_PER_NODE * NODE_START_ATTEMPTS` apart, so a node that fails to start (usually because
a port is already taken) can move its block forward on every attempt without ever reaching
the block of the next node.

Port 21000 is an arbitrary choice. It is far enough from the default AMQP port, so other
AMQP clients on the same host don't accidentally talk to the test brokers, and it is below the
ephemeral ports range.
"""

import dataclasses
import typing as tp

if tp.TYPE_CHECKING:
    from rabbitmq_ct_helpers.broker_management import fleet_config

TCP_PORTS_BASE: tp.Final[int] = 21000
NODE_START_ATTEMPTS: tp.Final[int] = 10

# Order matters, the ports are assigned from the base in this order
PORT_NAMES: tp.Final[tuple[str, ...]] = (
    "amqp",
    "amqp_tls",
    "mgmt",
    "erlang_dist",
    "erlang_dist_proxy",
)
PORTS_PER_NODE: tp.Final[int] = len(PORT_NAMES)
NODE_PORTS_SPAN: tp.Final[int] = PORTS_PER_NODE * NODE_START_ATTEMPTS


@dataclasses.dataclass(frozen=True, order=True)
class SkipNNodes:
    """Global ports base override that reserves port blocks of `num` nodes.

    Useful when several fleets run on the same host, e.g. one fleet per pytest worker.
    """

    num: int


@dataclasses.dataclass(frozen=True, order=True)
class PortSet:
    base: int
    amqp: int
    amqp_tls: int
    mgmt: int
    erlang_dist: int
    erlang_dist_proxy: int

    def as_range(self) -> range:
        return range(self.base, self.base + PORTS_PER_NODE)

    def overlaps(self, other: "PortSet") -> bool:
        return bool(set(self.as_range()).intersection(other.as_range()))


def get_global_base(tcp_ports_base: "int | SkipNNodes | None") -> int:
    """Return the base of the whole port space used by a fleet."""
    if tcp_ports_base is None:
        return TCP_PORTS_BASE
    if isinstance(tcp_ports_base, SkipNNodes):
        return TCP_PORTS_BASE + tcp_ports_base.num * NODE_PORTS_SPAN
    return tcp_ports_base


def get_initial_base(tcp_ports_base: "int | SkipNNodes | None", node_index: int) -> int:
    """Return the first port base tried for the node with the given index."""
    return get_global_base(tcp_ports_base) + node_index * NODE_PORTS_SPAN


def ports_from_base(base: int) -> PortSet:
    ports = {name: base + offset for offset, name in enumerate(PORT_NAMES)}
    return PortSet(base=base, **ports)


def allocate(
    fleet: "fleet_config.FleetConfig", node_index: int, prior_base: int | None = None
) -> PortSet:
    """Return ports for the node with the given index.

    When `prior_base` is given, this is a retry and the block moves right after the previous one.
    """
    if node_index < 0:
        msg = f"Invalid node index: {node_index}"
        raise ValueError(msg)

    if prior_base is None:
        base = get_initial_base(tcp_ports_base=fleet.tcp_ports_base, node_index=node_index)
    else:
        base = prior_base + PORTS_PER_NODE

    return ports_from_base(base)


def listeners_config(ports: PortSet) -> dict[str, dict[str, tp.Any]]:
    """Return broker config entries for the listeners bound to the given ports.

    The Erlang distribution ports don't appear in the configuration file.
    """
    return {
        "rabbit": {
            "tcp_listeners": [ports.amqp],
            "ssl_listeners": [ports.amqp_tls],
        },
        "rabbitmq_management": {
            "listener": {"port": ports.mgmt},
        },
    }
