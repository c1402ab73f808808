"""Reconcile netfilter rules.

Rules are never blindly appended: the chain is listed first and the listing
decides whether a rule is inserted, replaced in place or left untouched.
The planning functions are pure, :py:class:`Chain` runs their plans.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from throttler.api import Runner, run_command
from throttler.emul.commands import Command, Raw
from throttler.errors import CommandFailure

logger = logging.getLogger(__name__)

MANGLE = "mangle"


@dataclass(eq=True, frozen=True)
class ListedRule:
    number: int
    text: str

    def matches(self, pattern: str) -> bool:
        """True iff ``pattern`` appears as whole words in the rule."""
        return re.search(rf"(^|\s){re.escape(pattern)}(\s|$)", self.text) is not None


def parse_rules(listing: str) -> List[ListedRule]:
    """Parse the output of ``iptables -L <chain> --line-numbers``.

    Headers (``Chain ...``, ``num target ...``) are ignored.
    """
    rules = []
    for line in listing.splitlines():
        number, _, text = line.strip().partition(" ")
        if number.isdigit():
            rules.append(ListedRule(int(number), text.strip()))
    return rules


def iptables(*args: str, table: Optional[str] = None) -> Command:
    prefix = ["iptables"] + (["-t", table] if table else [])
    return Command(tuple(prefix + list(args)))


def mark_rule_args(
    group: str,
    mark: int,
    protocol: Optional[str] = None,
    skip_source_ports: Optional[str] = None,
    skip_destination_ports: Optional[str] = None,
    extra_filter: Optional[str] = None,
) -> List[str]:
    """Mark the packets sent by the members of ``group``."""
    args: List[str] = []
    if protocol:
        args += ["-p", protocol]
    if skip_source_ports:
        args += ["-m", "multiport", "!", "--sports", skip_source_ports]
    if skip_destination_ports:
        args += ["-m", "multiport", "!", "--dports", skip_destination_ports]
    if extra_filter:
        args.append(Raw(extra_filter))
    args += ["-m", "owner", "--gid-owner", group]
    args += ["-j", "MARK", "--set-mark", str(mark)]
    return args


def nflog_rule_args(mark: int, protocol: Optional[str] = None) -> List[str]:
    """Log the packets of the connections carrying ``mark``."""
    args: List[str] = ["-p", protocol] if protocol else []
    args += ["-m", "connmark", "--mark", str(mark)]
    args += ["-j", "NFLOG", "--nflog-group", str(mark)]
    return args


RESTORE_MARK_ARGS = ["-j", "CONNMARK", "--restore-mark"]
SAVE_MARK_ARGS = ["-j", "CONNMARK", "--save-mark"]


def plan_replace_or_insert(
    rules: Sequence[ListedRule],
    pattern: str,
    chain: str,
    rule_args: Sequence[str],
    table: Optional[str] = None,
) -> List[Command]:
    """Replace the rule matching ``pattern`` in place, else insert it first.

    Extra matching rules (duplicates) are deleted, highest number first so
    that the numbering of the remaining ones holds.
    """
    matched = [r for r in rules if r.matches(pattern)]
    if not matched:
        return [iptables("-I", chain, "1", *rule_args, table=table)]
    first, *duplicates = sorted(matched, key=lambda r: r.number)
    cmds = [
        iptables("-D", chain, str(r.number), table=table)
        for r in sorted(duplicates, key=lambda r: r.number, reverse=True)
    ]
    cmds.append(iptables("-R", chain, str(first.number), *rule_args, table=table))
    return cmds


def plan_ensure(
    rules: Sequence[ListedRule],
    pattern: str,
    chain: str,
    rule_args: Sequence[str],
    table: Optional[str] = None,
    first: bool = False,
) -> List[Command]:
    """Add the rule if no rule matches ``pattern``.

    Args:
        first: insert at the top of the chain instead of appending
    """
    if any(r.matches(pattern) for r in rules):
        return []
    if first:
        return [iptables("-I", chain, "1", *rule_args, table=table)]
    return [iptables("-A", chain, *rule_args, table=table)]


def plan_delete_matching(
    rules: Sequence[ListedRule],
    pattern: str,
    chain: str,
    table: Optional[str] = None,
) -> List[Command]:
    matched = sorted(
        (r for r in rules if r.matches(pattern)), key=lambda r: r.number, reverse=True
    )
    return [iptables("-D", chain, str(r.number), table=table) for r in matched]


class Chain:
    """A netfilter chain of a table, reconciled through a command runner."""

    def __init__(
        self, name: str, table: Optional[str] = None, runner: Runner = run_command
    ):
        self.name = name
        self.table = table
        self.runner = runner

    def __repr__(self):
        return f"Chain({self.table or 'filter'}/{self.name})"

    async def list(self) -> List[ListedRule]:
        cmd = iptables("-L", self.name, "--line-numbers", table=self.table)
        result = await self.runner(cmd.render())
        return parse_rules(result.stdout)

    async def _run(self, cmds: List[Command]) -> List[Command]:
        for cmd in cmds:
            await self.runner(cmd.render(), True)
        return cmds

    async def replace_or_insert(self, pattern: str, rule_args: Sequence[str]):
        rules = await self.list()
        return await self._run(
            plan_replace_or_insert(rules, pattern, self.name, rule_args, self.table)
        )

    async def ensure(self, pattern: str, rule_args: Sequence[str], first=False):
        rules = await self.list()
        return await self._run(
            plan_ensure(rules, pattern, self.name, rule_args, self.table, first=first)
        )

    async def delete_matching(self, pattern: str):
        rules = await self.list()
        return await self._run(
            plan_delete_matching(rules, pattern, self.name, self.table)
        )

    async def delete(self, rule_args: Sequence[str]) -> bool:
        """Delete a rule by specification, False if there was none."""
        try:
            cmd = iptables("-D", self.name, *rule_args, table=self.table)
            await self.runner(cmd.render())
        except CommandFailure as e:
            logger.debug("Unable to delete the rule from %s: %s", self, e)
            return False
        return True
