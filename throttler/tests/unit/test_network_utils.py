from throttler.errors import ThrottlerError
from throttler.network_utils import (
    _route_devices,
    check_device,
    get_default_device,
    resolve_device,
)
from throttler.objects import TrafficClassConfig

from . import ROUTES, AsyncThrottlerTest, FakeRunner, ThrottlerTest


class TestRouteDevices(ThrottlerTest):
    def test_devices(self):
        lines = ROUTES.splitlines()
        self.assertEqual(["eth0", "eth0"], _route_devices(lines))
        self.assertEqual(["eth0"], _route_devices(lines, default_only=True))
        self.assertEqual([], _route_devices(["", "broken dev"]))


class TestResolveDevice(AsyncThrottlerTest):
    async def test_default(self):
        runner = FakeRunner()
        self.assertEqual("eth0", await get_default_device(runner=runner))
        self.assertEqual(["ip route"], runner.commands)

    async def test_no_default(self):
        runner = FakeRunner(outputs={"ip route": "10.0.0.0/8 dev eth1\n"})
        with self.assertRaises(ThrottlerError):
            await get_default_device(runner=runner)

    async def test_check(self):
        runner = FakeRunner()
        self.assertTrue(await check_device("eth0", runner=runner))
        self.assertFalse(await check_device("wlan0", runner=runner))

    async def test_configured(self):
        runner = FakeRunner(outputs={"ip route": ROUTES + "10.0.0.0/8 dev eth1\n"})
        configs = [TrafficClassConfig(), TrafficClassConfig(device="eth1")]
        self.assertEqual("eth1", await resolve_device(configs, runner=runner))

    async def test_first_device_wins(self):
        runner = FakeRunner(outputs={"ip route": ROUTES + "10.0.0.0/8 dev eth1\n"})
        configs = [TrafficClassConfig(device="eth1"), TrafficClassConfig(device="eth0")]
        self.assertEqual("eth1", await resolve_device(configs, runner=runner))

    async def test_fallback(self):
        runner = FakeRunner()
        configs = [TrafficClassConfig(device="wlan0")]
        with self.assertLogs("throttler.network_utils", level="WARNING"):
            self.assertEqual("eth0", await resolve_device(configs, runner=runner))

    async def test_unset(self):
        self.assertEqual("eth0", await resolve_device([], runner=FakeRunner()))
