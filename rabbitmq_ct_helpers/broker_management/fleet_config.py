"""Configuration of a fleet of broker nodes provisioned for a test run."""

import dataclasses
import pathlib as pl
import typing as tp

from rabbitmq_ct_helpers.broker_management import node_config
from rabbitmq_ct_helpers.broker_management import ports as ports_mod
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import types as ttypes


@dataclasses.dataclass(frozen=True)
class Skip:
    """The test environment could not be prepared.

    This is not a test failure, tests that need the environment are expected to be skipped.
    """

    reason: str


@dataclasses.dataclass
class FleetConfig:
    """Test context of the broker fleet.

    The `nodes` list is set by the fleet supervisor, sorted by node name.
    """

    priv_dir: pl.Path
    rabbit_srcdir: ttypes.FileType = configuration.RABBITMQ_SRCDIR
    make_cmd: str = configuration.MAKE_CMD
    make_verbosity: int = configuration.MAKE_VERBOSITY
    rabbitmqctl_cmd: str = configuration.RABBITMQCTL_CMD
    nodes_count: int = 1
    clustered: bool = False
    tcp_ports_base: int | ports_mod.SkipNNodes | None = None
    nodename_suffix: str = ""
    erlang_node_config: node_config.AppEnvType = dataclasses.field(default_factory=dict)
    erlang_dist_module: str = ""
    erlang_dist_module_path: ttypes.FileType = ""
    net_ticktime: int | None = None
    username: str = configuration.DEFAULT_USER
    password: str = configuration.DEFAULT_USER
    hostname: str = configuration.DEFAULT_HOSTNAME
    vhost: str = configuration.DEFAULT_VHOST
    channel_max: int = 0
    nodes: list[node_config.NodeConfig] = dataclasses.field(default_factory=list)

    @classmethod
    def from_configuration(cls, priv_dir: ttypes.FileType, **overrides: tp.Any) -> "FleetConfig":
        """Create fleet config with values taken from the environment configuration."""
        values: dict[str, tp.Any] = {
            "nodes_count": configuration.NODES_COUNT,
            "clustered": configuration.CLUSTERED,
            "tcp_ports_base": configuration.TCP_PORTS_BASE or None,
            "nodename_suffix": configuration.NODENAME_SUFFIX,
            "erlang_dist_module": configuration.DIST_MODULE,
            "erlang_dist_module_path": configuration.DIST_MODULE_PATH,
            "net_ticktime": configuration.NET_TICKTIME or None,
        }
        values.update(overrides)
        return cls(priv_dir=pl.Path(priv_dir), **values)


def get_node_configs(fleet: FleetConfig, key: str = "") -> list[tp.Any]:
    """Return configs of all nodes, or the value of `key` from every node config."""
    if not key:
        return list(fleet.nodes)
    return [n.get(key) for n in fleet.nodes]


def get_node_config(fleet: FleetConfig, index: int, key: str = "") -> tp.Any:
    """Return config of the node with the given (0-based) position, or value of its `key`."""
    try:
        node = fleet.nodes[index]
    except IndexError as exc:
        msg = f"No broker node #{index}, the fleet has {len(fleet.nodes)} node(s)."
        raise IndexError(msg) from exc

    if not key:
        return node
    return node.get(key)
