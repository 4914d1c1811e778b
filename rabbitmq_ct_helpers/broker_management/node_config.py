"""Per-node configuration records and broker configuration files."""

import contextlib
import dataclasses
import logging
import pathlib as pl
import typing as tp

from rabbitmq_ct_helpers.broker_management import ports as ports_mod
from rabbitmq_ct_helpers.utils import erlang_terms
from rabbitmq_ct_helpers.utils import helpers
from rabbitmq_ct_helpers.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

CONFIG_HEADER = "% vim:ft=erlang:\n\n"
CONFIG_EXT = ".config"
UNUSED_NODEDIR_PREFIX = "_unused_nodedir_"

# Broker configuration: application name -> application environment
AppEnvType = dict[str, dict[str, tp.Any]]


@dataclasses.dataclass(frozen=True)
class NodeConfig:
    """Configuration of a single broker node.

    Every launcher step returns a new record, the record is never modified in place.
    """

    index: int
    nodename: str = ""
    ports: ports_mod.PortSet | None = None
    # Path to the broker config file without the extension, as the broker expects it
    config_filename: pl.Path | None = None
    failed_boot_attempts: int = 0
    erlang_node_config: AppEnvType = dataclasses.field(default_factory=dict)

    @property
    def config_dir(self) -> pl.Path | None:
        return self.config_filename.parent if self.config_filename else None

    def get(self, key: str) -> tp.Any:
        """Look up a value by key; port names (e.g. `amqp`) are looked up in the port set."""
        if key in ports_mod.PORT_NAMES or key == "ports_base":
            if self.ports is None:
                msg = f"Ports of node #{self.index} were not allocated yet."
                raise KeyError(msg)
            return self.ports.base if key == "ports_base" else getattr(self.ports, key)

        if key not in {f.name for f in dataclasses.fields(self)}:
            msg = f"Unknown node config key '{key}'."
            raise KeyError(msg)

        return getattr(self, key)


def merge_app_env(base: AppEnvType, overlay: AppEnvType) -> AppEnvType:
    """Merge application environments, values from `overlay` win.

    >>> merge_app_env({"rabbit": {"a": 1, "b": 2}}, {"rabbit": {"b": 3}, "kernel": {"c": 4}})
    {'rabbit': {'a': 1, 'b': 3}, 'kernel': {'c': 4}}
    """
    merged = {app: dict(env) for app, env in base.items()}
    for app, env in overlay.items():
        merged.setdefault(app, {}).update(env)
    return merged


def get_config_filename(priv_dir: ttypes.FileType, nodename: str) -> pl.Path:
    """Return path of the node's config file (without extension)."""
    return pl.Path(priv_dir) / nodename / nodename


def render_config(config: AppEnvType) -> str:
    return f"{CONFIG_HEADER}{erlang_terms.format_term(config)}.\n"


def materialize(
    base_config: AppEnvType,
    overlay: AppEnvType,
    nodename: str,
    priv_dir: ttypes.FileType,
) -> pl.Path:
    """Write the merged broker configuration of a node.

    Return path of the config file without the extension. Raise `OSError` when the node
    directory or the file can't be created.
    """
    config = merge_app_env(base_config, overlay)
    config_filename = get_config_filename(priv_dir=priv_dir, nodename=nodename)
    config_dir = config_filename.parent

    try:
        with contextlib.suppress(FileExistsError):
            config_dir.mkdir()
    except OSError as exc:
        msg = f"Failed to create broker node config directory '{config_dir}': {exc.strerror}"
        raise OSError(msg) from exc

    config_file = config_filename.with_name(f"{config_filename.name}{CONFIG_EXT}")
    try:
        config_file.write_text(render_config(config), encoding="utf-8")
    except OSError as exc:
        msg = f"Failed to create broker node config file '{config_file}': {exc.strerror}"
        raise OSError(msg) from exc

    LOGGER.debug(f"Written broker config file '{config_file}'.")
    return config_filename


def move_nodedir_away(node: NodeConfig) -> NodeConfig:
    """Rename the directory of a node that failed to start.

    The directory is kept for inspection, under a name that doesn't collide with the next attempt.
    """
    config_dir = node.config_dir
    if config_dir is None or not config_dir.exists():
        return dataclasses.replace(node, config_filename=None)

    new_dir = config_dir.parent / f"{UNUSED_NODEDIR_PREFIX}{config_dir.name}"
    if new_dir.exists():
        new_dir = new_dir.with_name(f"{new_dir.name}_{helpers.get_rand_str(4)}")

    try:
        config_dir.rename(new_dir)
    except OSError as exc:
        LOGGER.warning(f"Failed to move node directory '{config_dir}' away: {exc}")

    return dataclasses.replace(node, config_filename=None)
