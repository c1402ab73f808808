import asyncio

from throttler.emul.htb import ClassRouter
from throttler.emul.netem import (
    RuleScheduler,
    RuleTimeline,
    gemodel,
    netem_options,
    queue_limit,
)
from throttler.objects import AppliedValues, Direction, ThrottleRule

from .. import AsyncThrottlerTest, FakeRunner, ThrottlerTest


class TestNetemOptions(ThrottlerTest):
    def test_full(self):
        rule = ThrottleRule(rate=1000, delay=50, loss=5, queue=10)
        self.assertEqual(
            ["rate", "1000kbit", "limit", "10", "delay", "50ms", "loss", "5.00%"],
            netem_options(rule),
        )

    def test_computed_limit(self):
        rule = ThrottleRule(rate=1000, delay=50)
        self.assertEqual(7, queue_limit(rule))
        self.assertEqual(
            ["rate", "1000kbit", "limit", "7", "delay", "50ms"], netem_options(rule)
        )

    def test_no_limit_without_rate(self):
        rule = ThrottleRule(delay=50)
        self.assertEqual(0, queue_limit(rule))
        self.assertEqual(["delay", "50ms"], netem_options(rule))

    def test_empty(self):
        self.assertEqual([], netem_options(ThrottleRule()))
        self.assertEqual([], netem_options(ThrottleRule(rate=0, delay=0, loss=0)))

    def test_jitter(self):
        rule = ThrottleRule(
            delay=50,
            delay_jitter=10,
            delay_jitter_correlation=25,
            delay_distribution="normal",
        )
        self.assertEqual(
            ["delay", "50ms", "10ms", "25", "distribution", "normal"],
            netem_options(rule),
        )

    def test_correlation_needs_jitter(self):
        rule = ThrottleRule(delay=50, delay_jitter_correlation=25)
        self.assertEqual(["delay", "50ms"], netem_options(rule))

    def test_jitter_needs_delay(self):
        self.assertEqual([], netem_options(ThrottleRule(delay_jitter=10)))

    def test_loss_burst(self):
        rule = ThrottleRule(loss=5, loss_burst=10)
        self.assertEqual(["loss", "gemodel", "0.53", "10.00"], netem_options(rule))

    def test_total_loss_burst(self):
        rule = ThrottleRule(loss=100, loss_burst=10)
        self.assertEqual(["loss", "100.00%"], netem_options(rule))

    def test_gemodel(self):
        p, r = gemodel(5, 10)
        self.assertAlmostEqual(100 * 5 / (10 * 95), p)
        self.assertAlmostEqual(10, r)
        # stationary loss
        self.assertAlmostEqual(0.05, p / (p + r))

    def test_reorder(self):
        rule = ThrottleRule(delay=10, reorder=25, reorder_correlation=50, reorder_gap=5)
        self.assertEqual(
            ["delay", "10ms", "reorder", "25.00%", "50.00", "gap", "5"],
            netem_options(rule),
        )

    def test_float_rate(self):
        rule = ThrottleRule(rate=1500.5, queue=3)
        self.assertEqual(["rate", "1500.5kbit", "limit", "3"], netem_options(rule))


class TestRuleTimeline(AsyncThrottlerTest):
    async def test_sorted(self):
        rules = [
            ThrottleRule(rate=3, at=2),
            ThrottleRule(rate=1),
            ThrottleRule(rate=2, at=2),
        ]
        timeline = RuleTimeline(0, Direction.UP, "eth0", rules)
        self.assertEqual([1, 3, 2], [r.rate for r in timeline.rules])
        self.assertEqual((0, Direction.UP), timeline.key)

    async def test_fire_in_order(self):
        fired = []

        async def activate(timeline, rule):
            fired.append(rule.rate)

        rules = [ThrottleRule(rate=2, at=0.02), ThrottleRule(rate=1, at=0.01)]
        timeline = RuleTimeline(0, Direction.UP, "eth0", rules)
        handles = timeline.start(activate)
        self.assertEqual(2, len(handles))
        await asyncio.sleep(0.1)
        await timeline.wait()
        self.assertEqual([1, 2], fired)
        self.assertEqual(set(), timeline.pending)

    async def test_cancel(self):
        fired = []

        async def activate(timeline, rule):
            fired.append(rule.rate)

        rules = [ThrottleRule(rate=1), ThrottleRule(rate=2, at=60)]
        timeline = RuleTimeline(0, Direction.UP, "eth0", rules)
        timeline.start(activate)
        await asyncio.sleep(0.01)
        self.assertEqual(1, len(timeline.pending))
        timeline.cancel()
        self.assertTrue(timeline.cancelled)
        self.assertEqual(set(), timeline.pending)
        self.assertEqual([1], fired)


class BlockingRunner(FakeRunner):
    """Hold the netem changes until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def __call__(self, command, verbose=False):
        if "qdisc change" in command:
            await self.release.wait()
        return await super().__call__(command, verbose)


class TestRuleScheduler(AsyncThrottlerTest):
    def scheduler(self, runner):
        return RuleScheduler(ClassRouter(runner=runner), runner=runner)

    async def test_apply(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        rules = [ThrottleRule(rate=1000, delay=50, loss=5, queue=10)]
        await scheduler.schedule(0, Direction.UP, "eth0", rules, protocol="udp")
        await asyncio.sleep(0.05)
        await scheduler.wait()
        self.assertEqual(
            AppliedValues(rate=1000000, delay=50, loss=5, queue=10),
            scheduler.get_applied(0, Direction.UP),
        )
        self.assertEqual(AppliedValues(), scheduler.get_applied(0, Direction.DOWN))
        self.assertEqual(
            [
                "sudo -n tc qdisc change dev eth0 parent 1:2 handle 2: netem "
                "rate 1000kbit limit 10 delay 50ms loss 5.00%"
            ],
            runner.matching("qdisc change"),
        )

    async def test_routed_before_first_rule(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        rules = [ThrottleRule(rate=1000, at=60)]
        await scheduler.schedule(1, Direction.DOWN, "ifb0", rules)
        self.assertTrue(scheduler.router.is_routed(1, "ifb0"))
        self.assertEqual([], runner.matching("qdisc change"))
        scheduler.cancel()

    async def test_no_rules(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        await scheduler.schedule(0, Direction.UP, "eth0", [])
        self.assertEqual([], runner.commands)
        self.assertEqual([], scheduler.timelines)

    async def test_later_rule(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        rules = [ThrottleRule(rate=1000), ThrottleRule(rate=2000, at=0.02)]
        await scheduler.schedule(0, Direction.UP, "eth0", rules)
        await asyncio.sleep(0.01)
        self.assertEqual(1000000, scheduler.get_applied(0, Direction.UP).rate)
        await asyncio.sleep(0.05)
        await scheduler.wait()
        self.assertEqual(2000000, scheduler.get_applied(0, Direction.UP).rate)

    async def test_failure_keeps_previous_values(self):
        runner = FakeRunner(failures=["rate 2000kbit"])
        scheduler = self.scheduler(runner)
        rules = [ThrottleRule(rate=1000), ThrottleRule(rate=2000, at=0.01)]
        with self.assertLogs("throttler.emul.netem", level="ERROR"):
            await scheduler.schedule(0, Direction.UP, "eth0", rules)
            await asyncio.sleep(0.05)
            await scheduler.wait()
        self.assertEqual(1000000, scheduler.get_applied(0, Direction.UP).rate)

    async def test_cancel(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        rules = [ThrottleRule(rate=1000), ThrottleRule(rate=2000, at=0.02)]
        await scheduler.schedule(0, Direction.UP, "eth0", rules)
        await asyncio.sleep(0.01)
        scheduler.cancel()
        self.assertEqual(AppliedValues(), scheduler.get_applied(0, Direction.UP))
        await asyncio.sleep(0.05)
        self.assertEqual(1, len(runner.matching("qdisc change")))
        self.assertEqual(AppliedValues(), scheduler.get_applied(0, Direction.UP))

    async def test_cancel_during_activation(self):
        runner = BlockingRunner()
        scheduler = self.scheduler(runner)
        await scheduler.schedule(0, Direction.UP, "eth0", [ThrottleRule(rate=1000)])
        await asyncio.sleep(0.01)
        scheduler.cancel()
        runner.release.set()
        await scheduler.wait()
        self.assertEqual(AppliedValues(), scheduler.get_applied(0, Direction.UP))

    async def test_reset(self):
        runner = FakeRunner()
        scheduler = self.scheduler(runner)
        await scheduler.schedule(0, Direction.UP, "eth0", [ThrottleRule(rate=1000)])
        await asyncio.sleep(0.01)
        scheduler.reset()
        self.assertEqual([], scheduler.timelines)
        self.assertEqual({}, scheduler.applied)
