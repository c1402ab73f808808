"""Traffic classes and their shaping rules."""
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


def mark_for(index: int) -> int:
    """The netfilter mark of the packets belonging to the class ``index``."""
    return index + 1


def handle_for(index: int) -> int:
    """The HTB class minor number (and netem handle) of the class ``index``.

    1 is reserved for the default (unconstrained) class.
    """
    return index + 2


def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(t.capitalize() for t in tail)


@dataclass(eq=True, frozen=True)
class ThrottleRule:
    """The shaping parameters of one direction of a traffic class.

    Any parameter left to None isn't constrained.

    Args:
        rate: the available bandwidth (kbit/s)
        delay: the one way delay (ms)
        delay_jitter: the delay jitter (ms)
        delay_jitter_correlation: the jitter correlation (0-100)
        delay_distribution: uniform, normal, pareto or paretonormal
        reorder: the percentage of reordered packets
        reorder_correlation: the reordering correlation (%)
        reorder_gap: the reordering gap (packets)
        loss: the percentage of lost packets
        loss_burst: the mean loss burst length, turns the loss into a
            Gilbert-Elliott model
        queue: the queue length (packets).
            Defaults to :py:func:`~throttler.emul.utils.buffered_packets`
        at: the rule is applied ``at`` seconds after the class activation
    """

    rate: Optional[float] = None
    delay: Optional[float] = None
    delay_jitter: Optional[float] = None
    delay_jitter_correlation: Optional[float] = None
    delay_distribution: Optional[str] = None
    reorder: Optional[float] = None
    reorder_correlation: Optional[float] = None
    reorder_gap: Optional[int] = None
    loss: Optional[float] = None
    loss_burst: Optional[float] = None
    queue: Optional[int] = None
    at: float = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ThrottleRule":
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data and data[key] is not None:
                kwargs[f.name] = data[key]
        return cls(**kwargs)

    def to_dict(self) -> Dict:
        d = {_camel(f.name): getattr(self, f.name) for f in fields(self)}
        return {k: v for k, v in d.items() if v is not None}


RulesLike = Union[None, Mapping[str, Any], List[Mapping[str, Any]]]


def normalize_rules(rules: RulesLike) -> List[ThrottleRule]:
    """A single rule or a list of rules, sorted by activation time.

    The sort is stable: rules sharing the same ``at`` keep their order.
    """
    if not rules:
        return []
    if isinstance(rules, Mapping):
        rules = [rules]
    _rules = [
        r if isinstance(r, ThrottleRule) else ThrottleRule.from_dict(r)
        for r in rules
    ]
    return sorted(_rules, key=lambda r: r.at or 0)


@dataclass
class TrafficClassConfig:
    """A traffic class.

    Args:
        device: the device to shape (defaults to the default route device)
        sessions: the sessions bound to this class.
            A single id (``"2"``), an inclusive range (``"0-3"``) or a list
            (``"1,4,5"``)
        protocol: only shape ``udp`` or ``tcp`` packets
        skip_source_ports: comma separated source ports left unmarked
        skip_destination_ports: comma separated destination ports left
            unmarked
        filter: extra iptables match fragment used when marking
        match: extra tc ematch expression (e.g ``'cmp(u16 at 2 layer
            transport eq 5000)'``)
        capture: path of the pcap file capturing the class traffic
        up: the uplink rules
        down: the downlink rules
    """

    device: Optional[str] = None
    sessions: Optional[str] = None
    protocol: Optional[str] = None
    skip_source_ports: Optional[str] = None
    skip_destination_ports: Optional[str] = None
    filter: Optional[str] = None
    match: Optional[str] = None
    capture: Optional[str] = None
    up: List[ThrottleRule] = field(default_factory=list)
    down: List[ThrottleRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrafficClassConfig":
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in data:
                continue
            if f.name in ("up", "down"):
                kwargs[f.name] = normalize_rules(data[key])
            elif data[key] is not None:
                kwargs[f.name] = data[key]
        if "sessions" in kwargs:
            # sessions may be given as a bare number
            kwargs["sessions"] = str(kwargs["sessions"])
        return cls(**kwargs)

    def rules(self, direction: Direction) -> List[ThrottleRule]:
        return self.up if direction == Direction.UP else self.down


@dataclass
class AppliedValues:
    """What has been successfully applied on a class (rate in bit/s)."""

    rate: Optional[float] = None
    delay: Optional[float] = None
    loss: Optional[float] = None
    queue: Optional[int] = None

    @classmethod
    def from_rule(cls, rule: ThrottleRule, limit: int) -> "AppliedValues":
        return cls(
            rate=1000 * rule.rate if rule.rate else None,
            delay=rule.delay or None,
            loss=rule.loss or None,
            queue=limit or None,
        )

    def to_dict(self) -> Dict:
        d = dict(rate=self.rate, delay=self.delay, loss=self.loss, queue=self.queue)
        return {k: v for k, v in d.items() if v is not None}
