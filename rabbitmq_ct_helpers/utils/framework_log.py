import datetime
import functools
import logging
import pathlib as pl
import time

from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import locking
from rabbitmq_ct_helpers.utils import temptools

SCHEDULING_LOG_LOCK = ".scheduling_log.lock"


@functools.cache
def get_framework_log_path() -> pl.Path:
    return temptools.get_pytest_worker_tmp() / "framework.log"


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the `framework.log` file.

    The logger is configured per worker. It can be used for logging (and later reporting) events
    like a failure to start a broker fleet.
    """

    class UTCFormatter(logging.Formatter):
        converter = time.gmtime  # type: ignore[assignment]

    formatter = UTCFormatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.FileHandler(get_framework_log_path())
    handler.setFormatter(formatter)

    logger = logging.getLogger("framework")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)

    return logger


def scheduling_log(worker_id: str, msg: str) -> None:
    """Write a message to the scheduling log shared by all pytest workers."""
    if not configuration.SCHEDULING_LOG:
        return

    log_lock = f"{temptools.get_pytest_root_tmp()}/{SCHEDULING_LOG_LOCK}"
    with (
        locking.FileLockIfXdist(log_lock),
        open(configuration.SCHEDULING_LOG, "a", encoding="utf-8") as logfile,
    ):
        logfile.write(
            f"{datetime.datetime.now(tz=datetime.timezone.utc)} on {worker_id}: {msg}\n"
        )


def log_event(msg: str, level: int = logging.ERROR) -> None:
    """Log the message to `framework.log`.

    Nothing is logged outside of a pytest session, where the temporary directories are not set.
    """
    if temptools.PytestTempDirs.pytest_worker_tmp is None:
        return
    framework_logger().log(level, msg)
