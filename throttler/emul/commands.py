"""Typed builders of the ``tc`` and ``ip`` commands.

Builders return a :py:class:`Command` (an argument list) and never run
anything. The text sent to the shell is produced by
:py:meth:`Command.render`, the only place where quoting and privilege
escalation are handled.
"""
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from throttler.config import get_config

ROOT_HANDLE = "1:"
INGRESS_HANDLE = "ffff:"
DEFAULT_CLASSID = "1:1"

PROTOCOL_NUMBERS = {"udp": "0x11", "tcp": "0x6"}


class Raw(str):
    """An argument passed verbatim to the shell (e.g. a user provided match)."""


@dataclass(eq=True, frozen=True)
class Command:
    args: Tuple[str, ...]
    sudo: bool = True
    tolerate_failure: bool = False

    def render(self) -> str:
        parts = [a if isinstance(a, Raw) else shlex.quote(a) for a in self.args]
        prefix = get_config()["sudo"]
        if self.sudo and prefix:
            parts.insert(0, prefix)
        cmd = " ".join(parts)
        if self.tolerate_failure:
            cmd = f"{cmd} || true"
        return cmd

    def __str__(self):
        return self.render()


def _cmd(*args: str, sudo: bool = True, tolerate_failure: bool = False) -> Command:
    return Command(tuple(args), sudo=sudo, tolerate_failure=tolerate_failure)


def render_all(commands: Sequence[Command]) -> List[str]:
    return [c.render() for c in commands]


# ip


def ip_route() -> Command:
    return _cmd("ip", "route", sudo=False)


def modprobe_ifb() -> Command:
    return _cmd("modprobe", "ifb", tolerate_failure=True)


def ip_link_add_ifb(ifb: str) -> Command:
    return _cmd("ip", "link", "add", ifb, "type", "ifb", tolerate_failure=True)


def ip_link_set_up(device: str) -> Command:
    return _cmd("ip", "link", "set", "dev", device, "up")


# tc: teardown


def tc_qdisc_del_root(device: str) -> Command:
    return _cmd("tc", "qdisc", "del", "dev", device, "root", tolerate_failure=True)


def tc_class_del(device: str, root: bool = False) -> Command:
    args = ["tc", "class", "del", "dev", device] + (["root"] if root else [])
    return _cmd(*args, tolerate_failure=True)


def tc_filter_del(device: str, root: bool = False) -> Command:
    args = ["tc", "filter", "del", "dev", device] + (["root"] if root else [])
    return _cmd(*args, tolerate_failure=True)


def tc_qdisc_del_ingress(device: str) -> Command:
    return _cmd("tc", "qdisc", "del", "dev", device, "ingress", tolerate_failure=True)


# tc: root hierarchy


def tc_qdisc_add_htb_root(device: str) -> Command:
    """Root HTB, unclassified traffic goes to the 1:1 class."""
    return _cmd(
        "tc", "qdisc", "add", "dev", device, "root", "handle", ROOT_HANDLE,
        "htb", "default", "1",
    )


def tc_class_add(device: str, classid: str, rate: str) -> Command:
    return _cmd(
        "tc", "class", "add", "dev", device, "parent", ROOT_HANDLE,
        "classid", classid, "htb", "rate", rate, "ceil", rate,
    )


def tc_qdisc_add_ingress(device: str) -> Command:
    return _cmd(
        "tc", "qdisc", "add", "dev", device, "ingress", "handle", INGRESS_HANDLE,
        tolerate_failure=True,
    )


def tc_filter_add_redirect(device: str, ifb: str) -> Command:
    """Restore the connection mark of inbound packets and send them to the ifb."""
    return _cmd(
        "tc", "filter", "add", "dev", device, "parent", INGRESS_HANDLE,
        "protocol", "ip", "u32", "match", "u32", "0", "0",
        "action", "connmark",
        "action", "mirred", "egress", "redirect", "dev", ifb,
        "flowid", DEFAULT_CLASSID,
    )


# tc: per class


def classid_for(handle: int) -> str:
    return f"1:{handle}"


def tc_qdisc_add_netem(device: str, handle: int) -> Command:
    """An empty netem, the options are set later on with a change."""
    return _cmd(
        "tc", "qdisc", "add", "dev", device, "parent", classid_for(handle),
        "handle", f"{handle}:", "netem",
    )


def mark_matches(
    mark: int, protocol: Optional[str] = None, match: Optional[str] = None
) -> List[str]:
    """The ematch expressions of a class filter (joined with ``and``)."""
    matches: List[str] = [f"meta(nf_mark eq {mark})"]
    if protocol in PROTOCOL_NUMBERS:
        matches.append(f"cmp(u8 at 9 layer network eq {PROTOCOL_NUMBERS[protocol]})")
    if match:
        matches.append(Raw(match))
    return matches


def tc_filter_add_mark(
    device: str,
    mark: int,
    handle: int,
    protocol: Optional[str] = None,
    match: Optional[str] = None,
) -> Command:
    args = ["tc", "filter", "add", "dev", device, "parent", ROOT_HANDLE]
    args += ["protocol", "ip", "basic", "match"]
    for i, m in enumerate(mark_matches(mark, protocol=protocol, match=match)):
        if i > 0:
            args.append("and")
        args.append(m)
    args += ["flowid", classid_for(handle)]
    return _cmd(*args)


def tc_qdisc_change_netem(device: str, handle: int, options: Sequence[str]) -> Command:
    return _cmd(
        "tc", "qdisc", "change", "dev", device, "parent", classid_for(handle),
        "handle", f"{handle}:", "netem", *options,
    )
