"""
Tests for baseline persistence (tmpfs files and Redis hashes).
"""

import asyncio
import json
import os

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from trafficmon.lib.nftables.rule import TrafficDirection
from trafficmon.lib.services.baseline_store import (
    BaselineRecord,
    BaselineStoreError,
    FileBaselineStore,
    RedisBaselineStore,
)

MAC = "aa:bb:cc:dd:ee:ff"
IN = TrafficDirection.INBOUND
OUT = TrafficDirection.OUTBOUND


def _record(**kwargs) -> BaselineRecord:
    defaults = dict(mac=MAC, direction=IN, bw_bytes=1500, bw_ts=1760443200,
                    day_bytes=1200, day_date="2026-10-14", week_bytes=1000, week_num="2026-W42")
    defaults.update(kwargs)
    return BaselineRecord(**defaults)


class TestFileBaselineStore:
    def test_layout_and_fields(self, tmp_path):
        store = FileBaselineStore(str(tmp_path / "state"))

        asyncio.run(store.save(_record()))

        path = tmp_path / "state" / "aa_bb_cc_dd_ee_ff_in"
        assert path.exists()
        assert json.loads(path.read_text()) == {
            "bw_bytes": 1500,
            "bw_ts": 1760443200,
            "day_bytes": 1200,
            "day_date": "2026-10-14",
            "week_bytes": 1000,
            "week_num": "2026-W42",
        }
        assert asyncio.run(store.load(MAC, IN)) == _record()

    def test_unknown_record(self, tmp_path):
        assert asyncio.run(FileBaselineStore(str(tmp_path)).load(MAC, OUT)) is None

    def test_directions_do_not_collide(self, tmp_path):
        store = FileBaselineStore(str(tmp_path))
        asyncio.run(store.save(_record(direction=IN, bw_bytes=1)))
        asyncio.run(store.save(_record(direction=OUT, bw_bytes=2)))

        assert asyncio.run(store.load(MAC, IN)).bw_bytes == 1
        assert asyncio.run(store.load(MAC, OUT)).bw_bytes == 2

    def test_corrupt_record_is_treated_as_missing(self, tmp_path):
        (tmp_path / "aa_bb_cc_dd_ee_ff_in").write_text("{not json")

        assert asyncio.run(FileBaselineStore(str(tmp_path)).load(MAC, IN)) is None

    def test_read_failure_raises_store_error(self, tmp_path, monkeypatch):
        store = FileBaselineStore(str(tmp_path))
        asyncio.run(store.save(_record()))

        def denied(path):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr(store, "_read", denied)

        with pytest.raises(BaselineStoreError):
            asyncio.run(store.load(MAC, IN))

    def test_no_temp_files_left_behind(self, tmp_path):
        store = FileBaselineStore(str(tmp_path))
        asyncio.run(store.save(_record()))
        asyncio.run(store.save(_record(bw_bytes=2000)))

        assert os.listdir(tmp_path) == ["aa_bb_cc_dd_ee_ff_in"]

    def test_write_failure_raises_store_error(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        store = FileBaselineStore(str(blocker / "state"))

        with pytest.raises(BaselineStoreError):
            asyncio.run(store.save(_record()))


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.hashes = {}
        self.fail = fail
        self.closed = False

    async def hgetall(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping=None):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def aclose(self):
        self.closed = True


class TestRedisBaselineStore:
    def test_save_and_load(self):
        conn = FakeRedis()
        store = RedisBaselineStore(conn, prefix="tmon:baseline")

        asyncio.run(store.save(_record(day_bytes=None, day_date=None)))

        assert conn.hashes["tmon:baseline:aa_bb_cc_dd_ee_ff_in"]["day_bytes"] == ""
        assert conn.hashes["tmon:baseline:aa_bb_cc_dd_ee_ff_in"]["bw_bytes"] == "1500"
        assert asyncio.run(store.load(MAC, IN)) == _record(day_bytes=None, day_date=None)

    def test_bytes_responses_are_decoded(self):
        conn = FakeRedis()
        conn.hashes["tmon:baseline:aa_bb_cc_dd_ee_ff_out"] = {
            b"bw_bytes": b"10", b"bw_ts": b"5", b"day_bytes": b"3", b"day_date": b"2026-10-14",
            b"week_bytes": b"", b"week_num": b"",
        }

        record = asyncio.run(RedisBaselineStore(conn).load(MAC, OUT))

        assert record.bw_bytes == 10
        assert record.day_date == "2026-10-14"
        assert record.week_bytes is None

    def test_missing_key(self):
        assert asyncio.run(RedisBaselineStore(FakeRedis()).load(MAC, IN)) is None

    def test_connection_errors_raise_store_error(self):
        store = RedisBaselineStore(FakeRedis(fail=True))

        with pytest.raises(BaselineStoreError):
            asyncio.run(store.load(MAC, IN))
        with pytest.raises(BaselineStoreError):
            asyncio.run(store.save(_record()))

    def test_close(self):
        conn = FakeRedis()
        asyncio.run(RedisBaselineStore(conn).close())
        assert conn.closed
