import unittest
from typing import Dict, List, Optional

from throttler.api import CommandResult
from throttler.errors import CommandFailure

ROUTES = """default via 192.168.1.254 dev eth0 proto dhcp metric 100
192.168.1.0/24 dev eth0 proto kernel scope link src 192.168.1.10 metric 100
"""


class ThrottlerTest(unittest.TestCase):
    pass


class AsyncThrottlerTest(unittest.IsolatedAsyncioTestCase):
    pass


class FakeRunner:
    """Record the commands instead of running them.

    Args:
        outputs: stdout served to the commands starting with a key
            (first matching key wins)
        failures: commands containing one of these strings fail
    """

    def __init__(
        self,
        outputs: Optional[Dict[str, str]] = None,
        failures: Optional[List[str]] = None,
    ):
        self.outputs = {"ip route": ROUTES}
        self.outputs.update(outputs or {})
        self.failures = failures or []
        self.commands: List[str] = []

    async def __call__(self, command: str, verbose: bool = False) -> CommandResult:
        self.commands.append(command)
        for failure in self.failures:
            if failure in command:
                raise CommandFailure(command, 2, f"{failure}: boom")
        for prefix, stdout in self.outputs.items():
            if command.startswith(prefix):
                return CommandResult(command, stdout, "")
        return CommandResult(command, "", "")

    def matching(self, pattern: str) -> List[str]:
        return [c for c in self.commands if pattern in c]

    def clear(self):
        self.commands.clear()
