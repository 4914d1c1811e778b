"""Restart, stop and kill broker nodes; look up processes running on them."""

import ipaddress
import logging
import socket
import time
import typing as tp

import psutil

from rabbitmq_ct_helpers.broker_management import fleet_config
from rabbitmq_ct_helpers.utils import erlang_terms
from rabbitmq_ct_helpers.utils import remote

LOGGER = logging.getLogger(__name__)

PID_POLL_INTERVAL = 0.1


def _check_ok(nodename: str, operation: str, result: tp.Any) -> None:
    if result != erlang_terms.Atom("ok"):
        msg = f"Failed to {operation} broker on '{nodename}': {result}"
        raise remote.BrokerHelperError(msg)


def _nodename(fleet: fleet_config.FleetConfig, index: int) -> str:
    return str(fleet_config.get_node_config(fleet, index, "nodename"))


def restart_broker(nodename: str, rabbitmqctl_cmd: str = "") -> None:
    """Restart the broker application, keeping the Erlang VM running."""
    LOGGER.info(f"Restarting broker on '{nodename}'.")
    result = remote.eval_on_broker(
        nodename, "rabbit:stop(), rabbit:start().", rabbitmqctl_cmd=rabbitmqctl_cmd
    )
    _check_ok(nodename, "restart", result)


def restart_broker_i(fleet: fleet_config.FleetConfig, index: int) -> None:
    restart_broker(_nodename(fleet, index), rabbitmqctl_cmd=fleet.rabbitmqctl_cmd)


def stop_broker(nodename: str, rabbitmqctl_cmd: str = "") -> None:
    """Stop the broker application, keeping the Erlang VM running."""
    LOGGER.info(f"Stopping broker on '{nodename}'.")
    result = remote.run_on_broker(nodename, "rabbit", "stop", rabbitmqctl_cmd=rabbitmqctl_cmd)
    _check_ok(nodename, "stop", result)


def stop_broker_i(fleet: fleet_config.FleetConfig, index: int) -> None:
    stop_broker(_nodename(fleet, index), rabbitmqctl_cmd=fleet.rabbitmqctl_cmd)


def get_os_pid(nodename: str, rabbitmqctl_cmd: str = "") -> int:
    """Return OS process ID of the node's Erlang VM."""
    pid_str = remote.run_on_broker(nodename, "os", "getpid", rabbitmqctl_cmd=rabbitmqctl_cmd)
    try:
        return int(pid_str)
    except (TypeError, ValueError) as exc:
        msg = f"Unexpected OS pid of '{nodename}': {pid_str}"
        raise remote.BrokerHelperError(msg) from exc


def is_os_process_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def await_os_pid_death(pid: int, timeout: float | None = None) -> None:
    """Wait until the OS process is gone.

    Wait forever when `timeout` is not given. Raise `TimeoutError` when the timeout expires.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while is_os_process_alive(pid):
        if deadline is not None and time.monotonic() > deadline:
            msg = f"OS process {pid} is still alive after {timeout}s."
            raise TimeoutError(msg)
        time.sleep(PID_POLL_INTERVAL)


def kill_broker(nodename: str, timeout: float | None = None, rabbitmqctl_cmd: str = "") -> None:
    """Kill the node's Erlang VM and wait until it's gone."""
    pid = get_os_pid(nodename, rabbitmqctl_cmd=rabbitmqctl_cmd)
    LOGGER.info(f"Killing broker node '{nodename}' (OS pid {pid}).")
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        LOGGER.debug(f"OS process {pid} of '{nodename}' is already gone.")
        return
    await_os_pid_death(pid, timeout=timeout)


def kill_broker_i(
    fleet: fleet_config.FleetConfig, index: int, timeout: float | None = None
) -> None:
    kill_broker(_nodename(fleet, index), timeout=timeout, rabbitmqctl_cmd=fleet.rabbitmqctl_cmd)


def _ip_tuple(host: str) -> tuple[int, ...]:
    addr = ipaddress.ip_address(host)
    if addr.version == 4:
        return tuple(addr.packed)
    packed = addr.packed
    return tuple(int.from_bytes(packed[i : i + 2], "big") for i in range(0, 16, 2))


def _to_pid(nodename: str, value: tp.Any) -> erlang_terms.Pid:
    # `pid_to_list/1` evaluated on the broker, so the node part is the broker's own
    if (
        isinstance(value, erlang_terms.Pid | erlang_terms.Atom)
        or not isinstance(value, str)
        or not erlang_terms.PID_RE.fullmatch(value)
    ):
        msg = f"Unexpected pid from '{nodename}': {value}"
        raise remote.BrokerHelperError(msg)
    return erlang_terms.Pid(value)


def get_connection_pids(
    nodename: str, connections: tp.Iterable[socket.socket], rabbitmqctl_cmd: str = ""
) -> list[erlang_terms.Pid]:
    """Return pids of the broker connection processes serving the given client sockets.

    The connections are matched by the peer address, i.e. the local address of the client socket.
    The pids are in the form the broker node prints them, so they can be passed back to it.
    """
    peers = []
    for sock in connections:
        host, port = sock.getsockname()[:2]
        peers.append(
            [
                (erlang_terms.Atom("peer_host"), _ip_tuple(host)),
                (erlang_terms.Atom("peer_port"), port),
            ]
        )

    expr = (
        f"Peers = {erlang_terms.format_term(peers)}, "
        "[pid_to_list(P) || P <- rabbit_networking:connections(), "
        "lists:member(rabbit_networking:connection_info(P, [peer_host, peer_port]), Peers)]."
    )
    result = remote.eval_on_broker(nodename, expr, rabbitmqctl_cmd=rabbitmqctl_cmd)
    return [_to_pid(nodename, p) for p in result]


def get_queue_sup_pid(
    nodename: str, queue_pid: erlang_terms.Pid, rabbitmqctl_cmd: str = ""
) -> erlang_terms.Pid | None:
    """Return pid of the supervisor of the queue process, or `None` when not found.

    The `queue_pid` must be in the form the broker node prints it.
    """
    expr = (
        f"QPid = {erlang_terms.format_term(queue_pid)}, "
        "Sups = [S || {_, S, _, _} <- supervisor:which_children(rabbit_amqqueue_sup_sup)], "
        "case [S || S <- Sups, "
        "lists:keymember(QPid, 2, supervisor:which_children(S))] of "
        "[Sup | _] -> pid_to_list(Sup); [] -> undefined end."
    )
    result = remote.eval_on_broker(nodename, expr, rabbitmqctl_cmd=rabbitmqctl_cmd)
    if result == erlang_terms.Atom("undefined"):
        return None
    return _to_pid(nodename, result)
