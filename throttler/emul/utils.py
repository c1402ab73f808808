import math
from typing import Iterable, Optional

from throttler.config import get_config


def buffered_packets(rate: float, delay: float, mtu: Optional[int] = None) -> int:
    """Number of packets in flight for a rate (kbit/s) and a delay (ms).

    A 1.5 factor is applied for headroom, see
    https://lists.linuxfoundation.org/pipermail/netem/2007-March/001094.html
    """
    if mtu is None:
        mtu = get_config()["mtu"]
    return math.ceil(1.5 * rate * 1000 / 8 * delay / 1000 / mtu)


def to_precision(value: float, precision: int = 3) -> str:
    """Round half up and format with exactly ``precision`` decimals."""
    scale = 10**precision
    return f"{math.floor(value * scale + 0.5) / scale:.{precision}f}"


def _num(value: float) -> str:
    """12.0 -> 12 but 12.5 -> 12.5"""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _chain(commands: Iterable[str], strict: bool = True) -> str:
    """Build a single script out of several commands.

    Args:
        commands: the commands to run in sequence
        strict: True iff the script must stop on the first failure
            (commands ending with ``|| true`` never fail)
    """
    lines = [f"{c};" for c in commands]
    if strict:
        lines.insert(0, "set -e;")
    return "\n".join(lines)
