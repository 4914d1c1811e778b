"""Fake broker host for testing the fleet management without a broker."""

import dataclasses
import threading
import typing as tp

from rabbitmq_ct_helpers.broker_management import nodenames
from rabbitmq_ct_helpers.utils import helpers

MAKE_CMD = "fake-make"
RABBITMQCTL_CMD = "fake-rabbitmqctl"
MAX_NODES = 10

# Returns `(returncode, stdout)`, or `None` for the default behavior
CtlHandlerType = tp.Callable[[str, str, list[str]], tuple[int, str] | None]


@dataclasses.dataclass(frozen=True)
class CtlCall:
    nodename: str
    command: str
    args: list[str]
    global_args: list[str]
    env: dict[str, str] | None
    timeout: float | None = None


class FakeBrokerHost:
    """Stand-in for `make` and `rabbitmqctl` of a broker source tree.

    Nodes start unless their ports base is taken or their index is failing. CLI commands succeed
    for running nodes, unless `ctl_handler` says otherwise.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.taken_bases: set[int] = set()
        self.failing_indexes: set[int] = set()
        self.start_hooks: dict[int, tp.Callable[[], None]] = {}
        self.ctl_handler: CtlHandlerType | None = None
        self.timing_out_commands: set[str] = set()

        self.start_attempts: list[str] = []
        self.running: set[str] = set()
        self.stopped: list[str] = []
        self.ctl_calls: list[CtlCall] = []
        self.started_events = [threading.Event() for __ in range(MAX_NODES)]
        self.joined_events = [threading.Event() for __ in range(MAX_NODES)]

    def __call__(
        self,
        command: str | list,
        *,
        workdir: tp.Any = "",  # noqa: ARG002
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        shell: bool = False,  # noqa: ARG002
    ) -> helpers.CommandOut:
        cmd = [str(c) for c in command]
        if cmd[0] == MAKE_CMD:
            return self._make(cmd)
        if cmd[0] == RABBITMQCTL_CMD:
            return self._ctl(cmd, env=env, timeout=timeout)
        msg = f"Unexpected command: {cmd}"
        raise AssertionError(msg)

    @staticmethod
    def _out(cmd: list[str], returncode: int = 0, stdout: str = "") -> helpers.CommandOut:
        return helpers.CommandOut(
            cmd_str=" ".join(cmd), returncode=returncode, stdout=stdout.encode(), stderr=b""
        )

    def _make(self, cmd: list[str]) -> helpers.CommandOut:
        make_vars = dict(a.split("=", 1) for a in cmd if "=" in a)
        nodename = make_vars["RABBITMQ_NODENAME"]
        __, index, base = nodenames.parse_nodename(nodename)

        if "start-background-broker" in cmd:
            hook = self.start_hooks.get(index)
            if hook:
                hook()
            with self.lock:
                self.start_attempts.append(nodename)
                if base in self.taken_bases or index in self.failing_indexes:
                    return self._out(cmd, returncode=2)
                self.running.add(nodename)
            self.started_events[index].set()
            return self._out(cmd)

        if "stop-node" in cmd:
            with self.lock:
                self.running.discard(nodename)
                self.stopped.append(nodename)
            return self._out(cmd)

        msg = f"Unexpected make target: {cmd}"
        raise AssertionError(msg)

    def _ctl(
        self, cmd: list[str], env: dict[str, str] | None, timeout: float | None
    ) -> helpers.CommandOut:
        assert cmd[1] == "-n"
        nodename = cmd[2]
        pos = 3
        while cmd[pos] in ("-p", "-q"):
            pos += 2 if cmd[pos] == "-p" else 1
        command, args = cmd[pos], cmd[pos + 1 :]

        with self.lock:
            self.ctl_calls.append(
                CtlCall(
                    nodename=nodename,
                    command=command,
                    args=args,
                    global_args=cmd[3:pos],
                    env=env,
                    timeout=timeout,
                )
            )

        if command == "join_cluster":
            self.joined_events[nodenames.parse_nodename(nodename)[1]].set()

        if command in self.timing_out_commands:
            return dataclasses.replace(self._out(cmd, returncode=-9), timed_out=True)

        if self.ctl_handler:
            handled = self.ctl_handler(nodename, command, args)
            if handled is not None:
                return self._out(cmd, returncode=handled[0], stdout=handled[1])

        if nodename not in self.running:
            return self._out(cmd, returncode=69)

        return self._out(cmd, stdout="ok" if command == "eval" else "")

    def calls(self, command: str) -> list[CtlCall]:
        return [c for c in self.ctl_calls if c.command == command]
