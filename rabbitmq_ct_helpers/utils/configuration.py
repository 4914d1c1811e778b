"""Broker fleet and test environment configuration."""

import os
import pathlib as pl

IS_XDIST = bool(os.environ.get("PYTEST_XDIST_TESTRUNUID"))

DEFAULT_USER = "guest"
DEFAULT_VHOST = "/"
DEFAULT_HOSTNAME = "localhost"

# Path to the broker source tree. Integration tests are skipped when it is not set.
RABBITMQ_SRCDIR: str | pl.Path = os.environ.get("RABBITMQ_SRCDIR") or ""
if RABBITMQ_SRCDIR:
    RABBITMQ_SRCDIR = pl.Path(RABBITMQ_SRCDIR).expanduser().resolve()

MAKE_CMD = os.environ.get("MAKE") or "make"
# Verbosity of `make`, passed as `V=<num>`
MAKE_VERBOSITY = int(os.environ.get("MAKE_VERBOSITY") or 0)

RABBITMQCTL_CMD = os.environ.get("RABBITMQCTL") or ""
if not RABBITMQCTL_CMD:
    RABBITMQCTL_CMD = (
        str(pl.Path(RABBITMQ_SRCDIR) / "scripts" / "rabbitmqctl")
        if RABBITMQ_SRCDIR
        else "rabbitmqctl"
    )

NODES_COUNT = int(os.environ.get("RMQ_NODES_COUNT") or 1)
if NODES_COUNT < 1:
    msg = f"Invalid RMQ_NODES_COUNT '{NODES_COUNT}': must be >= 1"
    raise RuntimeError(msg)

CLUSTERED = bool(os.environ.get("RMQ_CLUSTERED"))

# Make sure the ports don't overlap with ephemeral port range. It's usually 32768 to 60999.
# See `cat /proc/sys/net/ipv4/ip_local_port_range`.
TCP_PORTS_BASE = int(os.environ.get("RMQ_TCP_PORTS_BASE") or 0)
if TCP_PORTS_BASE and not 1024 <= TCP_PORTS_BASE < 65000:
    msg = f"Invalid RMQ_TCP_PORTS_BASE: {TCP_PORTS_BASE}"
    raise RuntimeError(msg)

NODENAME_SUFFIX = os.environ.get("RMQ_NODENAME_SUFFIX") or ""

# Distribution heartbeat interval; the broker default is used when not set
NET_TICKTIME = int(os.environ.get("RMQ_NET_TICKTIME") or 0)
if NET_TICKTIME < 0:
    msg = f"Invalid RMQ_NET_TICKTIME: {NET_TICKTIME}"
    raise RuntimeError(msg)

# Custom distribution module (e.g. `inet_tcp_proxy_dist`) and the directory with its `.beam`
DIST_MODULE = os.environ.get("RMQ_DIST_MODULE") or ""
DIST_MODULE_PATH: str | pl.Path = os.environ.get("RMQ_DIST_MODULE_PATH") or ""
if DIST_MODULE_PATH:
    DIST_MODULE_PATH = pl.Path(DIST_MODULE_PATH).expanduser().resolve()
if DIST_MODULE and not DIST_MODULE_PATH:
    msg = "The 'RMQ_DIST_MODULE_PATH' env variable must be set together with 'RMQ_DIST_MODULE'."
    raise RuntimeError(msg)

# Compiled helper modules that need to be loadable on the broker nodes
HELPERS_EBIN_DIR: str | pl.Path = os.environ.get("HELPERS_EBIN_DIR") or ""
if HELPERS_EBIN_DIR:
    HELPERS_EBIN_DIR = pl.Path(HELPERS_EBIN_DIR).expanduser().resolve()

# Resolve SCHEDULING_LOG
SCHEDULING_LOG: str | pl.Path = os.environ.get("SCHEDULING_LOG") or ""
if SCHEDULING_LOG:
    SCHEDULING_LOG = pl.Path(SCHEDULING_LOG).expanduser().resolve()

# Broker nodes are kept running after tests finish
KEEP_NODES_RUNNING = bool(os.environ.get("KEEP_NODES_RUNNING"))

# Base URL of the repository browser used for linking test sources in reports
VCS_BASE_URL = os.environ.get("VCS_BASE_URL") or ""
