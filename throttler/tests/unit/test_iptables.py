from throttler.iptables import (
    MANGLE,
    Chain,
    ListedRule,
    mark_rule_args,
    nflog_rule_args,
    parse_rules,
    plan_delete_matching,
    plan_ensure,
    plan_replace_or_insert,
)

from . import AsyncThrottlerTest, FakeRunner, ThrottlerTest

LISTING = """Chain OUTPUT (policy ACCEPT)
num  target     prot opt source               destination
1    MARK       udp  --  anywhere             anywhere             owner GID match throttler0 MARK set 0x1
2    MARK       all  --  anywhere             anywhere             owner GID match throttler1 MARK set 0x2
3    MARK       all  --  anywhere             anywhere             owner GID match throttler10 MARK set 0xb
4    MARK       all  --  anywhere             anywhere             owner GID match throttler1 MARK set 0x2
"""  # noqa


def _render(cmds):
    return [c.render() for c in cmds]


class TestParse(ThrottlerTest):
    def test_parse(self):
        rules = parse_rules(LISTING)
        self.assertEqual([1, 2, 3, 4], [r.number for r in rules])
        self.assertTrue(rules[0].text.startswith("MARK"))

    def test_parse_empty(self):
        self.assertEqual([], parse_rules(""))
        self.assertEqual([], parse_rules("Chain INPUT (policy ACCEPT)\nnum target"))

    def test_matches_whole_words(self):
        rules = parse_rules(LISTING)
        pattern = "owner GID match throttler1"
        self.assertEqual([2, 4], [r.number for r in rules if r.matches(pattern)])
        self.assertTrue(ListedRule(1, "a b c").matches("a b"))
        self.assertFalse(ListedRule(1, "ab c").matches("b c"))


class TestRuleArgs(ThrottlerTest):
    def test_mark(self):
        self.assertEqual(
            ["-m", "owner", "--gid-owner", "throttler0"]
            + ["-j", "MARK", "--set-mark", "1"],
            mark_rule_args("throttler0", 1),
        )

    def test_mark_full(self):
        args = mark_rule_args(
            "throttler2",
            3,
            protocol="udp",
            skip_source_ports="22",
            skip_destination_ports="53,5000:5010",
            extra_filter="-d 10.0.0.0/8",
        )
        self.assertEqual(
            [
                "-p",
                "udp",
                "-m",
                "multiport",
                "!",
                "--sports",
                "22",
                "-m",
                "multiport",
                "!",
                "--dports",
                "53,5000:5010",
                "-d 10.0.0.0/8",
                "-m",
                "owner",
                "--gid-owner",
                "throttler2",
                "-j",
                "MARK",
                "--set-mark",
                "3",
            ],
            args,
        )

    def test_nflog(self):
        self.assertEqual(
            "-p tcp -m connmark --mark 2 -j NFLOG --nflog-group 2",
            " ".join(nflog_rule_args(2, protocol="tcp")),
        )


class TestPlans(ThrottlerTest):
    def setUp(self):
        self.rules = parse_rules(LISTING)

    def test_insert(self):
        cmds = plan_replace_or_insert(
            self.rules, "owner GID match throttler5", "OUTPUT", ["-j", "X"], MANGLE
        )
        self.assertEqual(["sudo -n iptables -t mangle -I OUTPUT 1 -j X"], _render(cmds))

    def test_replace(self):
        cmds = plan_replace_or_insert(
            self.rules, "owner GID match throttler0", "OUTPUT", ["-j", "X"], MANGLE
        )
        self.assertEqual(["sudo -n iptables -t mangle -R OUTPUT 1 -j X"], _render(cmds))

    def test_replace_removes_duplicates(self):
        cmds = plan_replace_or_insert(
            self.rules, "owner GID match throttler1", "OUTPUT", ["-j", "X"], MANGLE
        )
        self.assertEqual(
            [
                "sudo -n iptables -t mangle -D OUTPUT 4",
                "sudo -n iptables -t mangle -R OUTPUT 2 -j X",
            ],
            _render(cmds),
        )

    def test_ensure(self):
        self.assertEqual(
            [], plan_ensure(self.rules, "throttler0", "OUTPUT", ["-j", "X"])
        )
        self.assertEqual(
            ["sudo -n iptables -A INPUT -j X"],
            _render(plan_ensure([], "X", "INPUT", ["-j", "X"])),
        )
        self.assertEqual(
            ["sudo -n iptables -I INPUT 1 -j X"],
            _render(plan_ensure([], "X", "INPUT", ["-j", "X"], first=True)),
        )

    def test_delete_matching(self):
        cmds = plan_delete_matching(self.rules, "owner GID match throttler1", "OUTPUT")
        self.assertEqual(
            ["sudo -n iptables -D OUTPUT 4", "sudo -n iptables -D OUTPUT 2"],
            _render(cmds),
        )


class TestChain(AsyncThrottlerTest):
    async def test_list(self):
        runner = FakeRunner(outputs={"sudo -n iptables -t mangle -L OUTPUT": LISTING})
        chain = Chain("OUTPUT", table=MANGLE, runner=runner)
        rules = await chain.list()
        self.assertEqual(4, len(rules))
        self.assertEqual(
            ["sudo -n iptables -t mangle -L OUTPUT --line-numbers"], runner.commands
        )

    async def test_replace_or_insert(self):
        runner = FakeRunner(outputs={"sudo -n iptables -t mangle -L OUTPUT": LISTING})
        chain = Chain("OUTPUT", table=MANGLE, runner=runner)
        await chain.replace_or_insert("owner GID match throttler10", ["-j", "X"])
        self.assertEqual(
            ["sudo -n iptables -t mangle -R OUTPUT 3 -j X"], runner.matching("-R")
        )

    async def test_delete(self):
        runner = FakeRunner(failures=["--nflog-group 3"])
        chain = Chain("INPUT", runner=runner)
        self.assertTrue(await chain.delete(nflog_rule_args(2)))
        self.assertFalse(await chain.delete(nflog_rule_args(3)))
        self.assertEqual(
            "sudo -n iptables -D INPUT -m connmark --mark 2 -j NFLOG --nflog-group 2",
            runner.commands[0],
        )
