import pathlib as pl

from _pytest.tmpdir import TempPathFactory

from rabbitmq_ct_helpers.utils import configuration


class PytestTempDirs:
    """Pytest temporary directories that are used accross the framework.

    The class is initialized in `conftest.py` where we have access to the `tmp_path_factory`
    fixture.
    """

    pytest_worker_tmp: pl.Path | None = None
    pytest_root_tmp: pl.Path | None = None

    _err_init_str = "PytestTempDirs are not initialized"

    @classmethod
    def init(cls, tmp_path_factory: TempPathFactory) -> None:
        worker_tmp = pl.Path(tmp_path_factory.getbasetemp())
        cls.pytest_worker_tmp = worker_tmp
        cls.pytest_root_tmp = worker_tmp.parent if configuration.IS_XDIST else worker_tmp


def get_pytest_worker_tmp() -> pl.Path:
    """Return Pytest temporary directory for the current worker.

    When running pytest with multiple workers, each worker has it's own base temporary
    directory inside the "root" temporary directory.
    """
    if PytestTempDirs.pytest_worker_tmp is None:
        raise RuntimeError(PytestTempDirs._err_init_str)
    return PytestTempDirs.pytest_worker_tmp


def get_pytest_root_tmp() -> pl.Path:
    """Return root of the Pytest temporary directory for a single Pytest run."""
    if PytestTempDirs.pytest_root_tmp is None:
        raise RuntimeError(PytestTempDirs._err_init_str)
    return PytestTempDirs.pytest_root_tmp
