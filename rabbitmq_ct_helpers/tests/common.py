import inspect
import logging
import typing as tp

import pytest

from rabbitmq_ct_helpers.broker_management import broker_management
from rabbitmq_ct_helpers.utils import configuration
from rabbitmq_ct_helpers.utils import helpers

LOGGER = logging.getLogger(__name__)


SKIPIF_NOT_CLUSTERED = pytest.mark.skipif(
    not configuration.CLUSTERED or configuration.NODES_COUNT < 2,
    reason="needs a cluster of at least two broker nodes",
)


def hypothesis_settings(max_examples: int = 100) -> tp.Any:
    import hypothesis

    return hypothesis.settings(
        max_examples=max_examples,
        deadline=None,
        suppress_health_check=(
            hypothesis.HealthCheck.too_slow,
            hypothesis.HealthCheck.function_scoped_fixture,
        ),
    )


def get_test_id(fleet: broker_management.FleetConfig) -> str:
    """Return unique test ID - function name + first node of the fleet + random string."""
    curr_test = inspect.stack()[1].function
    first_node = fleet.nodes[0].nodename.split("@")[0] if fleet.nodes else "nonodes"
    rand_str = helpers.get_rand_str(3)
    test_id = f"{curr_test}_{first_node}_{rand_str}"
    LOGGER.info(f"Test ID: {test_id}")
    return test_id
