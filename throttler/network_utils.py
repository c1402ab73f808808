import logging
from typing import Iterable, List, Optional

from throttler.api import Runner, run_command
from throttler.emul.commands import ip_route
from throttler.errors import CommandFailure, ThrottlerError
from throttler.objects import TrafficClassConfig

logger = logging.getLogger(__name__)


def _route_devices(lines: Iterable[str], default_only: bool = False) -> List[str]:
    """Extract the ``dev`` field of ``ip route`` lines."""
    devices = []
    for line in lines:
        tokens = line.split()
        if default_only and (not tokens or tokens[0] != "default"):
            continue
        if "dev" in tokens[:-1]:
            devices.append(tokens[tokens.index("dev") + 1])
    return devices


async def get_default_device(runner: Runner = run_command) -> str:
    """The device of the default route."""
    result = await runner(ip_route().render())
    devices = _route_devices(result.stdout.splitlines(), default_only=True)
    if not devices:
        raise ThrottlerError("No default route found")
    return devices[0]


async def check_device(device: str, runner: Runner = run_command) -> bool:
    """True iff the device appears in the routing table."""
    result = await runner(ip_route().render())
    return device in _route_devices(result.stdout.splitlines())


async def resolve_device(
    configs: Iterable[TrafficClassConfig], runner: Runner = run_command
) -> str:
    """Get the device to shape.

    The first device set in the configuration is used if it is routed,
    otherwise the default route device is used.
    """
    device: Optional[str] = next((c.device for c in configs if c.device), None)
    if device:
        try:
            if await check_device(device, runner=runner):
                return device
        except CommandFailure as e:
            logger.debug("Unable to check %s: %s", device, e)
        logger.warning("Network interface %s not found, using default.", device)
    return await get_default_device(runner=runner)
