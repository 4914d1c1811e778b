"""Evaluate Erlang expressions and function calls on broker nodes.

Expressions are evaluated with `rabbitmqctl eval` and the printed result is parsed into
a Python value (see `erlang_terms`).
"""

import logging
import pathlib as pl
import typing as tp

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import ctl
from rabbitmq_ct_helpers.utils import erlang_terms
from rabbitmq_ct_helpers.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

EVAL_OPTS = ctl.CtlOptions(quiet=True)


class RemoteExecutionError(Exception):
    def __init__(self, nodename: str, reason: str) -> None:
        super().__init__(f"Remote execution on '{nodename}' failed: {reason}")
        self.nodename = nodename
        self.reason = reason


class BrokerHelperError(AssertionError):
    """A broker operation returned unexpected result."""


def eval_on_broker(
    nodename: str,
    expr: str,
    *,
    timeout: float | None = None,
    rabbitmqctl_cmd: str = "",
) -> tp.Any:
    """Evaluate the Erlang expression on the node and return the parsed result.

    Raise `RemoteExecutionError` when the evaluation fails, times out, or results in `{badrpc, _}`.
    """
    expr = expr.strip()
    if not expr.endswith("."):
        expr = f"{expr}."

    LOGGER.debug(f"Evaluating on '{nodename}': {expr}")
    out = ctl.run_ctl(
        nodename,
        "eval",
        [expr],
        opts=EVAL_OPTS,
        timeout=timeout,
        rabbitmqctl_cmd=rabbitmqctl_cmd,
    )
    if out.timed_out:
        raise RemoteExecutionError(nodename, f"timed out after {timeout}s")

    stdout = out.stdout.decode(errors="replace").strip()
    if out.returncode != 0:
        err = out.stderr.decode(errors="replace").strip() or stdout
        raise RemoteExecutionError(nodename, err)

    try:
        result = erlang_terms.parse_term(stdout)
    except erlang_terms.ErlangTermError as exc:
        msg = f"cannot parse result '{stdout}': {exc}"
        raise RemoteExecutionError(nodename, msg) from exc

    if isinstance(result, tuple) and len(result) == 2 and result[0] == "badrpc":
        raise RemoteExecutionError(nodename, f"badrpc: {result[1]}")

    return result


def add_code_path_to_broker(
    nodename: str,
    *code_paths: ttypes.FileType,
    timeout: float | None = None,
    rabbitmqctl_cmd: str = "",
) -> None:
    """Make sure the code paths are present in the node's code path.

    The `timeout` bounds each of the evaluations.
    """
    paths = sorted({str(pl.Path(p).resolve()) for p in code_paths if p})
    if not paths:
        return

    existing = eval_on_broker(
        nodename, "code:get_path().", timeout=timeout, rabbitmqctl_cmd=rabbitmqctl_cmd
    )
    if not isinstance(existing, list):
        msg = f"unexpected code path: {existing}"
        raise RemoteExecutionError(nodename, msg)

    for path in paths:
        if path in existing:
            continue
        LOGGER.debug(f"Adding code path '{path}' to '{nodename}'.")
        result = eval_on_broker(
            nodename,
            erlang_terms.format_call("code", "add_pathz", [path]),
            timeout=timeout,
            rabbitmqctl_cmd=rabbitmqctl_cmd,
        )
        if result is not True:
            msg = f"cannot add code path '{path}': {result}"
            raise RemoteExecutionError(nodename, msg)


def run_on_broker(
    nodename: str,
    module: str,
    function: str,
    args: tp.Iterable[tp.Any] = (),
    *,
    timeout: float | None = None,
    code_path: ttypes.FileType = "",
    rabbitmqctl_cmd: str = "",
) -> tp.Any:
    """Call `module:function(args...)` on the node and return the parsed result.

    The `code_path` directory (where `module` lives, when it's not part of the broker) and
    the directory of the compiled helper modules are added to the node's code path first.
    """
    add_code_path_to_broker(
        nodename,
        code_path,
        configuration.HELPERS_EBIN_DIR,
        timeout=timeout,
        rabbitmqctl_cmd=rabbitmqctl_cmd,
    )
    return eval_on_broker(
        nodename,
        erlang_terms.format_call(module, function, args),
        timeout=timeout,
        rabbitmqctl_cmd=rabbitmqctl_cmd,
    )


def run_on_broker_i(
    fleet: fleet_config.FleetConfig,
    index: int,
    module: str,
    function: str,
    args: tp.Iterable[tp.Any] = (),
    *,
    timeout: float | None = None,
    code_path: ttypes.FileType = "",
) -> tp.Any:
    """Call the function on the node with the given position in the fleet."""
    nodename = fleet_config.get_node_config(fleet, index, "nodename")
    return run_on_broker(
        nodename,
        module,
        function,
        args,
        timeout=timeout,
        code_path=code_path,
        rabbitmqctl_cmd=fleet.rabbitmqctl_cmd,
    )


def run_on_all_brokers(
    fleet: fleet_config.FleetConfig,
    module: str,
    function: str,
    args: tp.Iterable[tp.Any] = (),
    *,
    timeout: float | None = None,
    code_path: ttypes.FileType = "",
) -> list[tp.Any]:
    """Call the function on all nodes of the fleet, one node after another."""
    args = list(args)
    return [
        run_on_broker(
            n.nodename,
            module,
            function,
            args,
            timeout=timeout,
            code_path=code_path,
            rabbitmqctl_cmd=fleet.rabbitmqctl_cmd,
        )
        for n in fleet.nodes
    ]


def add_code_path_to_all_brokers(
    fleet: fleet_config.FleetConfig, code_path: ttypes.FileType
) -> None:
    for n in fleet.nodes:
        add_code_path_to_broker(n.nodename, code_path, rabbitmqctl_cmd=fleet.rabbitmqctl_cmd)
