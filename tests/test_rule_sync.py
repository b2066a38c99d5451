"""
Tests for reconciling counter rules against the DHCP lease table.
"""

import asyncio
from collections import Counter

from fakes import FakeLeaseService, FakeNft, lease

from trafficmon.lib.nftables.rule import TrafficDirection
from trafficmon.lib.services.rule_sync import RuleSynchronizer

IN = TrafficDirection.INBOUND
OUT = TrafficDirection.OUTBOUND


def _sync(nft: FakeNft, leases):
    service = leases if isinstance(leases, FakeLeaseService) else FakeLeaseService(leases)
    return asyncio.run(RuleSynchronizer(nft, service, namespace="tm").run_cycle())


def _owned_per_ip(nft: FakeNft) -> Counter:
    return Counter(ip for ip, _ in nft.owned())


class TestRuleSynchronizer:
    def test_first_cycle_creates_both_rules(self):
        """A leased device gets exactly one rule per direction, tagged tm:<ip>:<dir>"""
        nft = FakeNft()

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff", "laptop")])

        assert report.status == "OK"
        assert sorted(call[3] for call in nft.calls if call[0] == "add") == ["tm:10.0.0.5:in", "tm:10.0.0.5:out"]
        assert sorted(nft.owned(), key=lambda k: k[1].value) == [("10.0.0.5", IN), ("10.0.0.5", OUT)]
        assert report.managed_rules == 2

    def test_creates_missing_container_first(self):
        nft = FakeNft(has_table=False, has_chain=False)

        _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert nft.calls[:2] == [("add_table",), ("add_chain",)]

    def test_second_run_is_a_no_op(self):
        nft = FakeNft()
        leases = [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff"), lease("10.0.0.6", "11:22:33:44:55:66")]

        _sync(nft, leases)
        calls_after_first = len(nft.calls)
        report = _sync(nft, leases)

        assert len(nft.calls) == calls_after_first
        assert report.added == [] and report.deleted == []

    def test_every_leased_ip_has_exactly_two_rules(self):
        nft = FakeNft()
        leases = [lease(f"10.0.0.{i}", f"aa:bb:cc:dd:ee:{i:02x}") for i in range(2, 12)]

        _sync(nft, leases)

        assert set(_owned_per_ip(nft).values()) == {2}
        assert len(_owned_per_ip(nft)) == 10

    def test_heals_a_single_missing_direction(self):
        """Only the missing direction is added after a partial earlier failure"""
        nft = FakeNft()
        nft.add_raw("tm:10.0.0.5:out", 500)

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.added == [("10.0.0.5", IN)]
        assert _owned_per_ip(nft)["10.0.0.5"] == 2

    def test_deletes_rules_of_devices_no_longer_leased(self):
        nft = FakeNft()
        h_out = nft.add_raw("tm:10.0.0.9:out", 10)
        h_in = nft.add_raw("tm:10.0.0.9:in", 20)

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert sorted(report.deleted) == sorted([h_out, h_in])
        assert "10.0.0.9" not in _owned_per_ip(nft)
        assert _owned_per_ip(nft)["10.0.0.5"] == 2

    def test_duplicate_rules_are_collapsed(self):
        nft = FakeNft()
        keep = nft.add_raw("tm:10.0.0.5:out", 10)
        dup = nft.add_raw("tm:10.0.0.5:out", 20)
        nft.add_raw("tm:10.0.0.5:in", 30)

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.deleted == [dup]
        handles = [r["rule"]["handle"] for r in nft.rules]
        assert keep in handles and dup not in handles

    def test_unrelated_rules_are_never_touched(self):
        nft = FakeNft()
        foreign = nft.add_raw("fw4: something else", 5)
        untagged = nft.add_raw(None, 6)

        _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        handles = [r["rule"]["handle"] for r in nft.rules]
        assert foreign in handles and untagged in handles
        assert not any(call == ("delete", foreign) or call == ("delete", untagged) for call in nft.calls)

    def test_empty_lease_table_leaves_rules_untouched(self):
        """A momentarily empty lease table must not wipe every device's rules"""
        nft = FakeNft()
        nft.add_raw("tm:10.0.0.5:out", 10)
        nft.add_raw("tm:10.0.0.5:in", 20)

        report = _sync(nft, [])

        assert report.status == "SKIPPED"
        assert [c for c in nft.calls if c[0] in ("add", "delete")] == []
        assert _owned_per_ip(nft)["10.0.0.5"] == 2

    def test_lease_table_without_ipv4_counts_as_empty(self):
        nft = FakeNft()
        nft.add_raw("tm:10.0.0.5:out", 10)

        report = _sync(nft, [lease("fd00::5", "aa:bb:cc:dd:ee:ff")])

        assert report.status == "SKIPPED"
        assert [c for c in nft.calls if c[0] == "delete"] == []

    def test_unreadable_lease_table_skips_cycle(self):
        nft = FakeNft()
        nft.add_raw("tm:10.0.0.5:out", 10)

        report = _sync(nft, FakeLeaseService(unavailable=True))

        assert report.status == "SKIPPED"
        assert [c for c in nft.calls if c[0] in ("add", "delete")] == []

    def test_container_failure_fails_cycle(self):
        nft = FakeNft(has_table=False)
        nft.fail_ensure = True

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.status == "FAILED"
        assert nft.calls == []

    def test_failed_add_does_not_stop_the_rest(self):
        nft = FakeNft()
        nft.fail_adds = {("10.0.0.5", OUT)}

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff"), lease("10.0.0.6", "11:22:33:44:55:66")])

        assert report.failed_adds == [("10.0.0.5", OUT)]
        assert _owned_per_ip(nft) == Counter({"10.0.0.5": 1, "10.0.0.6": 2})

        # Next cycle heals the missing rule
        nft.fail_adds = set()
        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff"), lease("10.0.0.6", "11:22:33:44:55:66")])
        assert report.added == [("10.0.0.5", OUT)]

    def test_failed_delete_does_not_stop_the_rest(self):
        nft = FakeNft()
        stuck = nft.add_raw("tm:10.0.0.8:out", 10)
        gone = nft.add_raw("tm:10.0.0.9:out", 20)
        nft.fail_deletes = {stuck}

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.failed_deletes == [stuck]
        assert report.deleted == [gone]
        assert report.status == "OK"

    def test_rule_with_unreadable_counter_is_replaced(self):
        """A tagged rule using a named counter is owned but unusable: one fresh rule replaces it"""
        nft = FakeNft()
        named = nft.add_raw("tm:10.0.0.5:in", field="daddr")
        nft.rules[-1]["rule"]["expr"][1]["counter"] = "named_ctr"
        leases = [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")]

        first = _sync(nft, leases)
        second = _sync(nft, leases)

        assert sorted(first.added, key=lambda k: k[1].value) == [("10.0.0.5", IN), ("10.0.0.5", OUT)]
        assert first.deleted == [named]
        assert second.added == [] and second.deleted == []
        assert sorted(nft.owned(), key=lambda k: k[1].value) == [("10.0.0.5", IN), ("10.0.0.5", OUT)]

    def test_readable_rule_is_kept_over_unreadable_duplicate(self):
        nft = FakeNft()
        broken = nft.add_raw("tm:10.0.0.5:out")
        nft.rules[-1]["rule"]["expr"] = nft.rules[-1]["rule"]["expr"][:1]
        good = nft.add_raw("tm:10.0.0.5:out", 500)
        nft.add_raw("tm:10.0.0.5:in", 20, field="daddr")

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.added == []
        assert report.deleted == [broken]
        assert good in [r["rule"]["handle"] for r in nft.rules]

    def test_unreadable_rule_of_expired_lease_is_deleted(self):
        nft = FakeNft()
        stale = nft.add_raw("tm:10.0.0.9:in", field="daddr", address="10.0.0.9")
        nft.rules[-1]["rule"]["expr"][1]["counter"] = "named_ctr"

        report = _sync(nft, [lease("10.0.0.5", "aa:bb:cc:dd:ee:ff")])

        assert report.deleted == [stale]
        assert "10.0.0.9" not in _owned_per_ip(nft)
