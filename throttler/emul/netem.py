"""Scheduling of the netem parameters of the traffic classes.

Each class and direction owns a :py:class:`RuleTimeline`: its rules sorted
by activation time. When a rule fires, the netem qdisc of the class is
changed in place (never recreated, so that packets are always classified)
and the applied values are recorded.

Ref: https://man7.org/linux/man-pages/man8/tc-netem.8.html
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from throttler.api import Runner, run_command
from throttler.errors import CommandFailure
from throttler.log import getLogger
from throttler.objects import (
    AppliedValues,
    Direction,
    ThrottleRule,
    handle_for,
    mark_for,
    normalize_rules,
)

from .commands import tc_qdisc_change_netem
from .htb import ClassRouter
from .utils import _num, buffered_packets, to_precision

logger = logging.getLogger(__name__)


def queue_limit(rule: ThrottleRule) -> int:
    if rule.queue is not None:
        return rule.queue
    return buffered_packets(rule.rate or 0, rule.delay or 0)


def gemodel(loss: float, loss_burst: float) -> Tuple[float, float]:
    """Gilbert-Elliott transition probabilities (%) for a loss and a burst.

    p is the good to bad transition, r the bad to good one. The mean burst
    length is 100 / r packets and the stationary loss p / (p + r).
    """
    p = 100 * loss / (loss_burst * (100 - loss))
    r = 100 / loss_burst
    return p, r


def netem_options(rule: ThrottleRule, limit: Optional[int] = None) -> List[str]:
    """Build the netem options corresponding to a rule.

    Args:
        rule: the rule to translate
        limit: the queue length (defaults to :py:func:`queue_limit`)
    """
    if limit is None:
        limit = queue_limit(rule)
    options: List[str] = []
    if rule.rate and rule.rate > 0:
        options += ["rate", f"{_num(rule.rate)}kbit"]
    if limit and limit > 0:
        options += ["limit", str(limit)]
    if rule.delay and rule.delay > 0:
        options += ["delay", f"{_num(rule.delay)}ms"]
        if rule.delay_jitter and rule.delay_jitter > 0:
            options.append(f"{_num(rule.delay_jitter)}ms")
            if rule.delay_jitter_correlation and rule.delay_jitter_correlation > 0:
                options.append(_num(rule.delay_jitter_correlation))
        if rule.delay_distribution:
            options += ["distribution", rule.delay_distribution]
    if rule.loss and rule.loss > 0:
        if rule.loss_burst and rule.loss_burst > 0 and rule.loss < 100:
            p, r = gemodel(rule.loss, rule.loss_burst)
            options += ["loss", "gemodel", to_precision(p, 2), to_precision(r, 2)]
        else:
            options += ["loss", f"{to_precision(rule.loss, 2)}%"]
    if rule.reorder and rule.reorder > 0:
        options += ["reorder", f"{to_precision(rule.reorder, 2)}%"]
        if rule.reorder_correlation and rule.reorder_correlation > 0:
            options.append(to_precision(rule.reorder_correlation, 2))
        if rule.reorder_gap and rule.reorder_gap > 0:
            options += ["gap", str(rule.reorder_gap)]
    return options


Activation = Callable[["RuleTimeline", ThrottleRule], Awaitable[None]]


class RuleTimeline:
    """The rules of one class and one direction, and their pending timers.

    Args:
        index: the class index
        direction: up or down
        device: the device where the class lives
        rules: the rules (sorted by activation time here)
    """

    def __init__(
        self,
        index: int,
        direction: Direction,
        device: str,
        rules: List[ThrottleRule],
    ):
        self.index = index
        self.direction = direction
        self.device = device
        self.rules = normalize_rules(rules)
        self.pending: Set[asyncio.TimerHandle] = set()
        self.running: Set[asyncio.Task] = set()
        self.cancelled = False

    @property
    def key(self) -> Tuple[int, Direction]:
        return self.index, self.direction

    def start(self, activate: Activation) -> List[asyncio.TimerHandle]:
        """Arm one timer per rule, relative to now.

        Returns:
            The timer handles, in activation order. Each one can be
            cancelled individually.
        """
        loop = asyncio.get_running_loop()
        return [self._arm(loop, activate, rule) for rule in self.rules]

    def _arm(self, loop, activate: Activation, rule: ThrottleRule):
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self.pending.discard(handle)
            task = loop.create_task(activate(self, rule))
            self.running.add(task)
            task.add_done_callback(self.running.discard)

        handle = loop.call_later(rule.at or 0, fire)
        self.pending.add(handle)
        return handle

    def cancel(self):
        """Cancel the rules that haven't fired yet.

        Activations already running complete but aren't recorded anymore.
        """
        self.cancelled = True
        for handle in self.pending:
            handle.cancel()
        self.pending.clear()

    async def wait(self):
        """Wait for the running activations."""
        if self.running:
            await asyncio.gather(*self.running, return_exceptions=True)


class RuleScheduler:
    """Owns the timelines and the values applied on each class.

    Args:
        router: used to create a class before its first rule is scheduled
        runner: the command capability
    """

    def __init__(self, router: ClassRouter, runner: Runner = run_command):
        self.router = router
        self.runner = runner
        self.timelines: List[RuleTimeline] = []
        self.applied: Dict[Tuple[int, Direction], AppliedValues] = {}

    async def schedule(
        self,
        index: int,
        direction: Direction,
        device: str,
        rules: List[ThrottleRule],
        protocol: Optional[str] = None,
        match: Optional[str] = None,
    ) -> RuleTimeline:
        """Route the class and arm the timers of its rules.

        Raises:
            CommandFailure: if the class can't be created
        """
        timeline = RuleTimeline(index, Direction(direction), device, rules)
        if not timeline.rules:
            return timeline
        logger.info(
            "Scheduling %s rules for class %s (%s) on %s",
            len(timeline.rules),
            index,
            timeline.direction.value,
            device,
        )
        await self.router.route(index, device, protocol=protocol, match=match)
        timeline.start(self.activate)
        self.timelines.append(timeline)
        return timeline

    async def activate(self, timeline: RuleTimeline, rule: ThrottleRule):
        """Apply a rule on the netem qdisc of its class.

        A failure is logged, the previously applied values are kept and the
        rule isn't retried.
        """
        log = getLogger(
            __name__, tags=[f"class{timeline.index}", timeline.direction.value]
        )
        limit = queue_limit(rule)
        options = netem_options(rule, limit)
        log.info(
            "applying rules on %s (%s): %s",
            timeline.device,
            mark_for(timeline.index),
            " ".join(options),
        )
        cmd = tc_qdisc_change_netem(
            timeline.device, handle_for(timeline.index), options
        ).render()
        try:
            await self.runner(cmd)
        except CommandFailure as e:
            log.error("error running %s: %s", cmd, e)
            return
        if timeline.cancelled:
            return
        self.applied[timeline.key] = AppliedValues.from_rule(rule, limit)

    def get_applied(self, index: int, direction: Direction) -> AppliedValues:
        return self.applied.get((index, Direction(direction)), AppliedValues())

    def cancel(self):
        """Cancel every pending rule and forget the applied values."""
        for timeline in self.timelines:
            timeline.cancel()
        self.applied.clear()

    async def wait(self):
        await asyncio.gather(*[t.wait() for t in self.timelines])

    def reset(self):
        self.cancel()
        self.timelines.clear()
