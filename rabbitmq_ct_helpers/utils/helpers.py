import contextlib
import dataclasses
import functools
import inspect
import logging
import os
import random
import signal
import string
import subprocess
import types as tt
import typing as tp

from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CommandOut:
    cmd_str: str
    returncode: int
    stdout: bytes
    stderr: bytes
    timed_out: bool = False


@contextlib.contextmanager
def ignore_interrupt() -> tp.Iterator[None]:
    """Ignore the KeyboardInterrupt signal."""
    orig_handler = None
    try:
        orig_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
    except ValueError as exc:
        if "signal only works in main thread" not in str(exc):
            raise

    if orig_handler is None:
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGINT, orig_handler)


def run_command_out(
    command: str | list,
    *,
    workdir: ttypes.FileType = "",
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    shell: bool = False,
) -> CommandOut:
    """Run command and return its exit status and outputs, without checking the exit status.

    When `timeout` expires, the process is killed and `timed_out` is set in the result.
    """
    cmd: str | list
    if isinstance(command, str):
        cmd = command if shell else command.split()
        cmd_str = command
    else:
        cmd = [str(c) for c in command]
        cmd_str = " ".join(cmd)

    LOGGER.debug("Running `%s`", cmd_str)

    run_env = {**os.environ, **env} if env else None
    timed_out = False
    with subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        shell=shell,
        cwd=workdir or None,
        env=run_env,
    ) as p:
        try:
            stdout, stderr = p.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            p.kill()
            stdout, stderr = p.communicate()
            timed_out = True
        retcode = p.returncode

    return CommandOut(
        cmd_str=cmd_str, returncode=retcode, stdout=stdout, stderr=stderr, timed_out=timed_out
    )


def run_command(
    command: str | list,
    *,
    workdir: ttypes.FileType = "",
    env: dict[str, str] | None = None,
    ignore_fail: bool = False,
    shell: bool = False,
) -> bytes:
    """Run command."""
    out = run_command_out(command, workdir=workdir, env=env, shell=shell)

    if not ignore_fail and out.returncode != 0:
        err_dec = out.stderr.decode()
        err_dec = err_dec or out.stdout.decode()
        msg = f"An error occurred while running `{out.cmd_str}`: {err_dec}"
        raise RuntimeError(msg)

    return out.stdout


@functools.cache
def get_current_commit() -> str:
    return os.environ.get("GIT_REVISION") or run_command("git rev-parse HEAD").decode().strip()


def get_rand_str(length: int = 8) -> str:
    """Return random string."""
    if length < 1:
        return ""
    return "".join(random.choice(string.ascii_lowercase) for i in range(length))


def get_line_str_from_frame(frame: tt.FrameType) -> str:
    lineno = frame.f_lineno
    fpath = frame.f_globals["__file__"]
    line_str = f"{fpath}#L{lineno}"
    return line_str


def get_vcs_link() -> str:
    """Return link to the current line in the repository browser.

    Falls back to the local `filename#lineno` when `VCS_BASE_URL` is not configured.
    """
    calling_frame = None
    with contextlib.suppress(AttributeError):
        calling_frame = inspect.currentframe().f_back  # type: ignore

    if not calling_frame:
        msg = "Couldn't get the calling frame."
        raise ValueError(msg)

    line_str = get_line_str_from_frame(frame=calling_frame)
    if not configuration.VCS_BASE_URL:
        return line_str

    loc_part = line_str[line_str.find("rabbitmq_ct_helpers") :]
    url = f"{configuration.VCS_BASE_URL}/blob/{get_current_commit()}/{loc_part}"
    return url
