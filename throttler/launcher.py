"""Launch processes whose packets belong to a traffic class.

A process is bound to a class through an OS group: every packet sent by a
member of ``throttler<index>`` is marked with the class mark in the mangle
table, and the mark is saved in (and restored from) the connection so that
inbound packets of the same flows carry it too. The ingress filter of the
shaped device restores it before redirecting the packets to the ifb.

The launcher itself is a small script re-executing the command under the
group (``newgrp``).
"""
import getpass
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader

from throttler.api import Runner, run_command
from throttler.config import get_config
from throttler.emul.commands import Command
from throttler.errors import CommandFailure
from throttler.iptables import (
    MANGLE,
    RESTORE_MARK_ARGS,
    SAVE_MARK_ARGS,
    Chain,
    mark_rule_args,
)
from throttler.objects import TrafficClassConfig, mark_for

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
LAUNCHER_TEMPLATE = "launcher.sh.j2"
GROUP_PREFIX = "throttler"


def group_for(index: int) -> str:
    return f"{GROUP_PREFIX}{index}"


def mark_rule_pattern(index: int) -> str:
    return f"owner GID match {group_for(index)}"


def launcher_path(index: int, launcher_dir: Optional[str] = None) -> Path:
    if launcher_dir is None:
        launcher_dir = get_config()["launcher_dir"]
    return Path(launcher_dir) / f"throttler-launcher-{index}"


def render_launcher(executable: str, index: int) -> str:
    loader = FileSystemLoader(searchpath=str(TEMPLATE_DIR))
    env = Environment(loader=loader, autoescape=False, keep_trailing_newline=True)
    template = env.get_template(LAUNCHER_TEMPLATE)
    return template.render(
        executable=executable, group=group_for(index), mark=mark_for(index), index=index
    )


class GroupMarkLauncher:
    """Bind launched commands to traffic classes.

    Args:
        runner: the command capability
        launcher_dir: where the launchers are written
            (defaults to the ``launcher_dir`` setting)
        user: the user to add to the groups (defaults to the current one)
    """

    def __init__(
        self,
        runner: Runner = run_command,
        launcher_dir: Optional[str] = None,
        user: Optional[str] = None,
    ):
        self.runner = runner
        self.launcher_dir = launcher_dir
        self.user = user or getpass.getuser()
        self.output = Chain("OUTPUT", table=MANGLE, runner=runner)
        self.prerouting = Chain("PREROUTING", table=MANGLE, runner=runner)
        self.postrouting = Chain("POSTROUTING", table=MANGLE, runner=runner)

    async def ensure_group(self, group: str):
        try:
            await self.runner(Command(("getent", "group", group), sudo=False).render())
        except CommandFailure:
            logger.info("Creating group %s", group)
            await self.runner(Command(("addgroup", "--system", group)).render(), True)
        await self.runner(
            Command(("adduser", self.user, group, "--quiet")).render(), True
        )

    async def ensure_mark_rule(self, index: int, config: TrafficClassConfig):
        """Install the marking rule of the class, or update it in place."""
        args = mark_rule_args(
            group_for(index),
            mark_for(index),
            protocol=config.protocol,
            skip_source_ports=config.skip_source_ports,
            skip_destination_ports=config.skip_destination_ports,
            extra_filter=config.filter,
        )
        return await self.output.replace_or_insert(mark_rule_pattern(index), args)

    async def ensure_connmark_rules(self):
        """One restore rule on PREROUTING, one save rule on POSTROUTING."""
        await self.prerouting.ensure("CONNMARK restore", RESTORE_MARK_ARGS, first=True)
        await self.postrouting.ensure("CONNMARK save", SAVE_MARK_ARGS, first=True)

    async def build(
        self,
        executable: str,
        index: Optional[int],
        configs: Optional[Sequence[TrafficClassConfig]],
    ) -> str:
        """Get the command running ``executable`` within the class ``index``.

        Without configuration, with an unknown class or when the group, the
        rules or the script can't be set up, the executable is returned
        unchanged: it will run unshaped.
        """
        logger.debug("build launcher executable=%s index=%s", executable, index)
        if not configs or index is None or not 0 <= index < len(configs):
            logger.debug("Not configured, %s will run unshaped", executable)
            return executable
        path = launcher_path(index, self.launcher_dir)
        try:
            await self.ensure_group(group_for(index))
            await self.ensure_mark_rule(index, configs[index])
            await self.ensure_connmark_rules()
            path.write_text(render_launcher(executable, index))
            os.chmod(path, 0o755)
        except (CommandFailure, OSError) as e:
            logger.error(
                "Unable to build the launcher of class %s, %s will run unshaped: %s",
                index,
                executable,
                e,
            )
            return executable
        return str(path)

    async def remove_mark_rules(self, count: int):
        """Remove the marking rules of the classes 0 to ``count`` (included)."""
        logger.debug("cleanup marking rules (%s)", count)
        try:
            rules = await self.output.list()
            for index in range(count + 1):
                pattern = mark_rule_pattern(index)
                if any(r.matches(pattern) for r in rules):
                    await self.output.delete_matching(pattern)
        except CommandFailure as e:
            logger.error("cleanup marking rules error: %s", e)
