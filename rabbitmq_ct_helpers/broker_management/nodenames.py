"""Names of broker nodes.

The node name is derived from the node's ports base, so a node that is restarted on a new set
of ports gets a new name as well.
"""

import re

NODENAME_PREFIX = "rmq-ct"
NODENAME_HOST = "localhost"

_NODENAME_RE = re.compile(rf"^{NODENAME_PREFIX}(?:-(.+))?-(\d+)-(\d+)@{NODENAME_HOST}$")


def build_nodename(port_base: int, index: int, suffix: str = "") -> str:
    """Return node name for the node with the given index and ports base.

    >>> build_nodename(21000, 0)
    'rmq-ct-1-21000@localhost'
    >>> build_nodename(21055, 1, suffix="partitions")
    'rmq-ct-partitions-2-21055@localhost'
    """
    suffix_str = f"-{suffix}" if suffix else ""
    return f"{NODENAME_PREFIX}{suffix_str}-{index + 1}-{port_base}@{NODENAME_HOST}"


def parse_nodename(nodename: str) -> tuple[str, int, int]:
    """Return suffix, node index and ports base encoded in the node name."""
    match = _NODENAME_RE.match(nodename)
    if not match:
        msg = f"Not a test broker node name: '{nodename}'"
        raise ValueError(msg)
    suffix, num, base = match.groups()
    return suffix or "", int(num) - 1, int(base)
