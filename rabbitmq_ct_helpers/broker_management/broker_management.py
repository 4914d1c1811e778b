"""Module for exposing useful components of broker fleet management.

The broker fleet management starts a set of broker nodes for a test session, optionally
joins them into a cluster, and stops them at the end of the session.

Key concepts:
    - **Fleet**: A set of broker nodes described by `FleetConfig`. The supervisor starts all
      nodes concurrently and collects them one at a time. When any node fails to start (or to
      join the cluster), the whole fleet is stopped and `Skip` is returned instead of the fleet.
    - **Launcher**: Starts a single node. A node that fails to start is retried on a fresh block
      of TCP ports, a bounded number of times.
    - **Port blocks**: Ports of a node are derived from the node index, and from the number of
      failed attempts, so the nodes of a fleet never compete for the same ports.
    - **`FleetManager`**: The class that test fixtures interact with. It makes sure fleets of
      different pytest workers don't compete for ports either.
"""

# flake8: noqa
from rabbitmq_ct_helpers.broker_management.fleet import run_steps
from rabbitmq_ct_helpers.broker_management.fleet import setup_steps
from rabbitmq_ct_helpers.broker_management.fleet import start_fleet
from rabbitmq_ct_helpers.broker_management.fleet import stop_fleet
from rabbitmq_ct_helpers.broker_management.fleet import teardown_steps
from rabbitmq_ct_helpers.broker_management.fleet_config import FleetConfig
from rabbitmq_ct_helpers.broker_management.fleet_config import Skip
from rabbitmq_ct_helpers.broker_management.fleet_config import get_node_config
from rabbitmq_ct_helpers.broker_management.fleet_config import get_node_configs
from rabbitmq_ct_helpers.broker_management.manager import FleetManager
from rabbitmq_ct_helpers.broker_management.ports import SkipNNodes
