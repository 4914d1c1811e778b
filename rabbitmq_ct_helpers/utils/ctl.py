"""Run broker CLI (`rabbitmqctl`) commands against test broker nodes.

A command either succeeds, and `OK` is returned, or a `CtlFailure` is returned, classified
by the exit code of the CLI tool.
"""

import argparse
import dataclasses
import enum
import logging
import threading
import typing as tp

from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import helpers

LOGGER = logging.getLogger(__name__)

OK: tp.Final[str] = "ok"

# Erlang's default; used also when no tick time is configured
DEFAULT_NET_TICKTIME: tp.Final[int] = 60

_net_ticktime_lock = threading.Lock()
_net_ticktime = DEFAULT_NET_TICKTIME


class CtlFailureKind(enum.StrEnum):
    BAD_ARGUMENT = "bad_argument"
    NODEDOWN = "nodedown"
    TIMEOUT = "timeout"
    ERROR = "error"


# Exit codes of the CLI tools, see `sysexits.h`
EXIT_CODES: tp.Final[dict[int, CtlFailureKind]] = {
    64: CtlFailureKind.BAD_ARGUMENT,
    69: CtlFailureKind.NODEDOWN,
    75: CtlFailureKind.TIMEOUT,
}


class CtlActionError(AssertionError):
    """A CLI command didn't give the expected result."""


@dataclasses.dataclass(frozen=True)
class CtlFailure:
    kind: CtlFailureKind
    cmd_str: str
    returncode: int
    output: str

    def __str__(self) -> str:
        return f"`{self.cmd_str}` failed ({self.kind}, exit code {self.returncode}): {self.output}"


@dataclasses.dataclass(frozen=True)
class CtlOptions:
    """Global options of CLI commands. `None` means "not set"."""

    vhost: str | None = None
    quiet: bool | None = None
    # Any other global options, e.g. `{"--longnames": ""}`
    extra: tp.Mapping[str, str] = dataclasses.field(default_factory=dict)

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.vhost is not None:
            args.extend(["-p", self.vhost])
        if self.quiet:
            args.append("-q")
        for opt, val in self.extra.items():
            args.append(opt)
            if val:
                args.append(val)
        return args


DEFAULT_OPTIONS: tp.Final[CtlOptions] = CtlOptions(vhost=configuration.DEFAULT_VHOST, quiet=False)


def expand_options(defaults: CtlOptions, new: CtlOptions) -> CtlOptions:
    """Fill options that are not set in `new` from `defaults`.

    >>> expand_options(CtlOptions(vhost="/", quiet=False), CtlOptions(quiet=True))
    CtlOptions(vhost='/', quiet=True, extra={})
    """
    return CtlOptions(
        vhost=defaults.vhost if new.vhost is None else new.vhost,
        quiet=defaults.quiet if new.quiet is None else new.quiet,
        extra={**defaults.extra, **new.extra},
    )


def classify_exit_code(returncode: int) -> CtlFailureKind:
    return EXIT_CODES.get(returncode, CtlFailureKind.ERROR)


def apply_net_ticktime(ticktime: int | None) -> int:
    """Set the distribution tick time used by the CLI tools when talking to the brokers.

    Needs to happen before the broker nodes are started, so the CLI and the brokers agree
    on the value.
    """
    global _net_ticktime  # noqa: PLW0603

    new_ticktime = ticktime or DEFAULT_NET_TICKTIME
    with _net_ticktime_lock:
        if _net_ticktime != new_ticktime:
            LOGGER.info(f"Setting net_ticktime to {new_ticktime}s (was {_net_ticktime}s).")
            _net_ticktime = new_ticktime
    return new_ticktime


def get_net_ticktime() -> int:
    with _net_ticktime_lock:
        return _net_ticktime


def get_ctl_env() -> dict[str, str] | None:
    ticktime = get_net_ticktime()
    if ticktime == DEFAULT_NET_TICKTIME:
        return None
    return {"RABBITMQ_CTL_ERL_ARGS": f"-kernel net_ticktime {ticktime}"}


def run_ctl(
    nodename: str,
    command: str,
    args: tp.Iterable[str] = (),
    *,
    opts: CtlOptions | None = None,
    timeout: float | None = None,
    rabbitmqctl_cmd: str = "",
) -> helpers.CommandOut:
    """Run the CLI command against the node, without interpreting the result."""
    cmd = [
        rabbitmqctl_cmd or configuration.RABBITMQCTL_CMD,
        "-n",
        nodename,
        *(opts.to_args() if opts else []),
        command,
        *args,
    ]
    return helpers.run_command_out(cmd, env=get_ctl_env(), timeout=timeout)


def control_action(
    command: str,
    nodename: str,
    args: tp.Iterable[str] = (),
    *,
    opts: CtlOptions | None = None,
    timeout: float | None = None,
    rabbitmqctl_cmd: str = "",
) -> str | CtlFailure:
    """Run the CLI command against the node.

    Caller's options are merged with the default ones (caller's values win).
    Return `OK`, or `CtlFailure` describing what went wrong.
    """
    args = list(args)
    merged_opts = expand_options(DEFAULT_OPTIONS, opts or CtlOptions())
    LOGGER.info(f"rabbitmqctl {command} {' '.join(args)} on node '{nodename}'")

    out = run_ctl(
        nodename,
        command,
        args,
        opts=merged_opts,
        timeout=timeout,
        rabbitmqctl_cmd=rabbitmqctl_cmd,
    )
    output = (out.stdout.decode(errors="replace") + out.stderr.decode(errors="replace")).strip()

    if out.timed_out:
        LOGGER.info(f"Timed out after {timeout}s.")
        return CtlFailure(
            kind=CtlFailureKind.TIMEOUT,
            cmd_str=out.cmd_str,
            returncode=out.returncode,
            output=output,
        )

    if out.returncode == 0:
        if output:
            LOGGER.info(output)
        LOGGER.info("...done.")
        return OK

    failure = CtlFailure(
        kind=classify_exit_code(out.returncode),
        cmd_str=out.cmd_str,
        returncode=out.returncode,
        output=output,
    )
    LOGGER.info(f"...failed: {failure}")
    return failure


class _RaisingArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> tp.NoReturn:
        raise ValueError(message)


def _get_opts_parser() -> argparse.ArgumentParser:
    parser = _RaisingArgumentParser(prog="rabbitmqctl", add_help=False)
    parser.add_argument("-n", "--node", required=True)
    parser.add_argument("-p", "--vhost")
    parser.add_argument("-q", "--quiet", action="store_true", default=None)
    parser.add_argument("-t", "--timeout", type=float)
    parser.add_argument("command")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    return parser


def control_action_opts(raw: tp.Sequence[str], rabbitmqctl_cmd: str = "") -> str | CtlFailure:
    """Run CLI command given as a raw argument list, e.g. `["-n", node, "-q", "status"]`."""
    try:
        parsed = _get_opts_parser().parse_args(list(raw))
    except ValueError as exc:
        return CtlFailure(
            kind=CtlFailureKind.BAD_ARGUMENT,
            cmd_str=" ".join(raw),
            returncode=64,
            output=str(exc),
        )

    return control_action(
        parsed.command,
        parsed.node,
        parsed.args,
        opts=CtlOptions(vhost=parsed.vhost, quiet=parsed.quiet),
        timeout=parsed.timeout,
        rabbitmqctl_cmd=rabbitmqctl_cmd,
    )


def info_action(
    command: str,
    nodename: str,
    columns: tp.Iterable[str],
    *,
    check_vhost: bool = False,
    timeout: float | None = None,
    rabbitmqctl_cmd: str = "",
) -> None:
    """Check an info command (e.g. `list_queues`) works with and without info keys.

    Raise `CtlActionError` when any of the calls gives unexpected result.
    """

    def _run(args: tp.Iterable[str], opts: CtlOptions | None = None) -> str | CtlFailure:
        return control_action(
            command,
            nodename,
            args,
            opts=opts,
            timeout=timeout,
            rabbitmqctl_cmd=rabbitmqctl_cmd,
        )

    checks: list[tuple[list[str], CtlOptions | None]] = [([], None)]
    if check_vhost:
        checks.append(([], CtlOptions(vhost=configuration.DEFAULT_VHOST)))
    checks.append((list(columns), None))

    for args, opts in checks:
        result = _run(args, opts)
        if result != OK:
            msg = f"Info command `{command} {' '.join(args)}` failed: {result}"
            raise CtlActionError(msg)

    # An unknown info key must be rejected
    result = _run(["dummy"])
    if not (isinstance(result, CtlFailure) and result.kind == CtlFailureKind.BAD_ARGUMENT):
        msg = f"Info command `{command} dummy` was expected to fail with bad argument: {result}"
        raise CtlActionError(msg)
