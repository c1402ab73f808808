"""HTB hierarchy of the shaped devices.

Two devices are involved: the physical device, whose root HTB shapes the
outbound (up) traffic, and an ifb device where the inbound (down) traffic is
redirected so that it can be shaped on egress as well.

.. code-block:: text

    dev root 1: htb default 1
    ├── 1:1 htb (unconstrained)
    ├── 1:2 htb ── 2: netem   <- filter meta(nf_mark eq 1)
    └── 1:3 htb ── 3: netem   <- filter meta(nf_mark eq 2)

Ref: https://tldp.org/HOWTO/Traffic-Control-HOWTO/classful-qdiscs.html
"""
import logging
from typing import List, Optional, Set, Tuple

from throttler.api import Runner, run_command
from throttler.config import get_config
from throttler.errors import CommandFailure
from throttler.objects import handle_for, mark_for

from .commands import (
    DEFAULT_CLASSID,
    Command,
    classid_for,
    ip_link_add_ifb,
    ip_link_set_up,
    modprobe_ifb,
    render_all,
    tc_class_add,
    tc_class_del,
    tc_filter_add_mark,
    tc_filter_add_redirect,
    tc_filter_del,
    tc_qdisc_add_htb_root,
    tc_qdisc_add_ingress,
    tc_qdisc_add_netem,
    tc_qdisc_del_ingress,
    tc_qdisc_del_root,
)
from .utils import _chain

logger = logging.getLogger(__name__)


class DeviceBootstrap:
    """Create (or remove) the root hierarchy of a device and of the ifb.

    Args:
        runner: the command capability
        ifb: the ifb device name (defaults to the ``ifb_device`` setting)
        rate: rate and ceil of the default class
            (defaults to the ``default_rate`` setting)
    """

    def __init__(
        self,
        runner: Runner = run_command,
        ifb: Optional[str] = None,
        rate: Optional[str] = None,
    ):
        config = get_config()
        self.runner = runner
        self.ifb = ifb or config["ifb_device"]
        self.rate = rate or config["default_rate"]

    def remove_commands(self, device: str) -> List[Command]:
        return [
            tc_qdisc_del_root(device),
            tc_class_del(device),
            tc_filter_del(device),
            tc_qdisc_del_ingress(device),
            tc_qdisc_del_root(self.ifb),
            tc_class_del(self.ifb, root=True),
            tc_filter_del(self.ifb, root=True),
        ]

    def add_commands(self, device: str) -> List[Command]:
        return [
            modprobe_ifb(),
            ip_link_add_ifb(self.ifb),
            ip_link_set_up(self.ifb),
            tc_qdisc_add_htb_root(device),
            tc_class_add(device, DEFAULT_CLASSID, self.rate),
            tc_qdisc_add_htb_root(self.ifb),
            tc_class_add(self.ifb, DEFAULT_CLASSID, self.rate),
            tc_qdisc_add_ingress(device),
            tc_filter_add_redirect(device, self.ifb),
        ]

    async def setup(self, device: str):
        """Install the root hierarchies.

        Raises:
            CommandFailure: if any of the (non optional) commands fails
        """
        logger.info("Setting up the root hierarchy on %s and %s", device, self.ifb)
        await self.runner(_chain(render_all(self.add_commands(device))), True)

    async def teardown(self, device: str):
        """Remove the root hierarchies.

        Missing qdiscs, classes or filters aren't an error.
        """
        logger.debug("Tearing down the root hierarchy on %s and %s", device, self.ifb)
        script = _chain(render_all(self.remove_commands(device)), strict=False)
        try:
            await self.runner(script)
        except CommandFailure as e:
            logger.error("Teardown of %s failed: %s", device, e)


class ClassRouter:
    """Create the class, its netem and the filter sending marked packets there.

    The HTB class itself isn't constrained (shaping is done by the netem
    qdisc). A class is created only once per device, further rules change
    the netem qdisc in place.
    """

    def __init__(self, runner: Runner = run_command, rate: Optional[str] = None):
        self.runner = runner
        self.rate = rate or get_config()["default_rate"]
        self.routes: Set[Tuple[int, str]] = set()

    def commands(
        self,
        index: int,
        device: str,
        protocol: Optional[str] = None,
        match: Optional[str] = None,
    ) -> List[Command]:
        mark, handle = mark_for(index), handle_for(index)
        return [
            tc_class_add(device, classid_for(handle), self.rate),
            tc_qdisc_add_netem(device, handle),
            tc_filter_add_mark(device, mark, handle, protocol=protocol, match=match),
        ]

    def is_routed(self, index: int, device: str) -> bool:
        return (index, device) in self.routes

    async def route(
        self,
        index: int,
        device: str,
        protocol: Optional[str] = None,
        match: Optional[str] = None,
    ):
        """Create the class ``index`` on ``device``.

        Raises:
            CommandFailure: if the class can't be created
        """
        if self.is_routed(index, device):
            logger.debug("Class %s already routed on %s", index, device)
            return
        logger.info(
            "Routing class %s on %s (mark=%s protocol=%s match=%s)",
            index,
            device,
            mark_for(index),
            protocol,
            match,
        )
        cmds = self.commands(index, device, protocol=protocol, match=match)
        try:
            await self.runner(_chain(render_all(cmds)), True)
        except CommandFailure as e:
            logger.error("Unable to route class %s on %s: %s", index, device, e)
            raise
        self.routes.add((index, device))

    def reset(self):
        """Forget the routes (the kernel state is removed by the bootstrap)."""
        self.routes.clear()
