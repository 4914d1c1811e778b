"""Set and clear broker policies."""

import logging
import typing as tp

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.utils import erlang_terms
from rabbitmq_ct_helpers.utils import remote

LOGGER = logging.getLogger(__name__)

PolicyDefinitionType = tp.Mapping[str, tp.Any] | tp.Iterable[tuple[str, tp.Any]]
HaPolicyType = str | tuple[str, tp.Any]

# Actions of the test harness are attributed to the broker internal user.
# Pass empty string for brokers that don't track the acting user.
INTERNAL_USER = "rmq-internal"


def _to_binary(value: tp.Any) -> tp.Any:
    """Convert strings (also nested in lists) into binaries, as the broker expects them."""
    if isinstance(value, str) and not isinstance(value, erlang_terms.Atom):
        return value.encode("utf-8")
    if isinstance(value, list):
        return [_to_binary(v) for v in value]
    return value


def format_definition(definition: PolicyDefinitionType) -> list[tuple[bytes, tp.Any]]:
    """Return policy definition as a list of `{<<"key">>, Value}` pairs.

    >>> format_definition({"ha-mode": "exactly", "ha-params": 2})
    [(b'ha-mode', b'exactly'), (b'ha-params', 2)]
    """
    items = definition.items() if isinstance(definition, dict) else definition
    return [(k.encode("utf-8"), _to_binary(v)) for k, v in items]


def _check_ok(operation: str, result: tp.Any) -> None:
    if result != erlang_terms.Atom("ok"):
        msg = f"Failed to {operation}: {result}"
        raise remote.BrokerHelperError(msg)


def set_policy(
    fleet: fleet_config.FleetConfig,
    index: int,
    name: str,
    pattern: str,
    apply_to: str,
    definition: PolicyDefinitionType,
    priority: int = 0,
    acting_user: str = INTERNAL_USER,
) -> None:
    """Set the policy on the node with the given position in the fleet."""
    LOGGER.info(f"Setting policy '{name}' (pattern '{pattern}', apply to '{apply_to}').")
    args: list[tp.Any] = [
        fleet.vhost.encode("utf-8"),
        name.encode("utf-8"),
        pattern.encode("utf-8"),
        format_definition(definition),
        priority,
        apply_to.encode("utf-8"),
    ]
    if acting_user:
        args.append(acting_user.encode("utf-8"))

    result = remote.run_on_broker_i(fleet, index, "rabbit_policy", "set", args)
    _check_ok(f"set policy '{name}'", result)


def clear_policy(
    fleet: fleet_config.FleetConfig, index: int, name: str, acting_user: str = INTERNAL_USER
) -> None:
    LOGGER.info(f"Clearing policy '{name}'.")
    args: list[tp.Any] = [fleet.vhost.encode("utf-8"), name.encode("utf-8")]
    if acting_user:
        args.append(acting_user.encode("utf-8"))

    result = remote.run_on_broker_i(fleet, index, "rabbit_policy", "delete", args)
    _check_ok(f"clear policy '{name}'", result)


def get_ha_definition(
    policy: HaPolicyType, extra: PolicyDefinitionType = ()
) -> list[tuple[str, tp.Any]]:
    """Return definition of a mirroring policy.

    `policy` is either `"all"`, or a `(mode, params)` pair, e.g. `("exactly", 2)`
    or `("nodes", [nodename1, nodename2])`.

    >>> get_ha_definition(("exactly", 2), {"ha-sync-mode": "automatic"})
    [('ha-mode', 'exactly'), ('ha-params', 2), ('ha-sync-mode', 'automatic')]
    """
    if policy == "all":
        ha = [("ha-mode", "all")]
    elif isinstance(policy, tuple) and len(policy) == 2:
        mode, params = policy
        ha = [("ha-mode", mode), ("ha-params", params)]
    else:
        msg = f"Invalid HA policy: {policy!r}"
        raise ValueError(msg)

    extra_items = extra.items() if isinstance(extra, dict) else extra
    return [*ha, *extra_items]


def set_ha_policy(
    fleet: fleet_config.FleetConfig,
    index: int,
    pattern: str,
    policy: HaPolicyType,
    extra: PolicyDefinitionType = (),
) -> None:
    """Set mirroring policy named `pattern` for queues matching `pattern`."""
    set_policy(
        fleet,
        index,
        name=pattern,
        pattern=pattern,
        apply_to="queues",
        definition=get_ha_definition(policy, extra),
    )
