import asyncio
import contextlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

from trafficmon.lib.constants import REDIS_KEY_PREFIX, STATE_DIR_PATH
from trafficmon.lib.dhcp.utils import mac_id
from trafficmon.lib.nftables.rule import TrafficDirection

log = structlog.get_logger(__name__)


class BaselineStoreError(RuntimeError):
    pass


@dataclass
class BaselineRecord:
    """
    Per (mac, direction) counter baselines.
        - bw_bytes / bw_ts: last cumulative byte count and when it was sampled
        - day_bytes / day_date: cumulative count when the current day started being tracked
        - week_bytes / week_num: same for the current ISO week
    """

    mac: str
    direction: TrafficDirection
    bw_bytes: int = 0
    bw_ts: int = 0
    day_bytes: int | None = None
    day_date: str | None = None
    week_bytes: int | None = None
    week_num: str | None = None

    def to_fields(self) -> dict:
        data = asdict(self)
        data.pop("mac")
        data.pop("direction")
        return data

    @classmethod
    def from_fields(cls, mac: str, direction: TrafficDirection, data: dict) -> "BaselineRecord":
        def _int(name: str) -> int | None:
            v = data.get(name)
            if v is None or v == "":
                return None
            return int(v)

        def _str(name: str) -> str | None:
            v = data.get(name)
            if v is None or v == "":
                return None
            return str(v)

        return cls(
            mac=mac,
            direction=direction,
            bw_bytes=_int("bw_bytes") or 0,
            bw_ts=_int("bw_ts") or 0,
            day_bytes=_int("day_bytes"),
            day_date=_str("day_date"),
            week_bytes=_int("week_bytes"),
            week_num=_str("week_num"),
        )


def record_key(mac: str, direction: TrafficDirection) -> str:
    return f"{mac_id(mac)}_{direction.value}"


class BaselineStore(ABC):
    @abstractmethod
    async def load(self, mac: str, direction: TrafficDirection) -> BaselineRecord | None:
        ...

    @abstractmethod
    async def save(self, record: BaselineRecord) -> None:
        ...

    async def close(self) -> None:
        return None


class FileBaselineStore(BaselineStore):
    """One JSON file per (mac, direction) under a tmpfs directory, replaced atomically on save."""

    def __init__(self, state_dir: str = STATE_DIR_PATH) -> None:
        self.state_dir = state_dir

    def path_for(self, mac: str, direction: TrafficDirection) -> str:
        return os.path.join(self.state_dir, record_key(mac, direction))

    def _read(self, path: str) -> dict | None:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def _write(self, path: str, data: dict) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f)
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    async def load(self, mac: str, direction: TrafficDirection) -> BaselineRecord | None:
        path = self.path_for(mac, direction)
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._read, path)
        except OSError as e:
            # Only a missing file means "no record"; anything else must not reset the baselines
            raise BaselineStoreError(f"Failed to read {path}: {e}") from e
        except ValueError as e:
            log.warning("baseline_unreadable", path=path, error=str(e))
            return None

        try:
            if data is None:
                return None
            if not isinstance(data, dict):
                raise ValueError("record is not a JSON object")
            return BaselineRecord.from_fields(mac, direction, data)
        except (ValueError, TypeError) as e:
            log.warning("baseline_unreadable", path=path, error=str(e))
            return None

    async def save(self, record: BaselineRecord) -> None:
        path = self.path_for(record.mac, record.direction)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, path, record.to_fields())
        except OSError as e:
            raise BaselineStoreError(f"Failed to write {path}: {e}") from e


class RedisBaselineStore(BaselineStore):
    """
    Same records as Redis hashes. Point it at a non-persistent Redis so the
    baselines reset together with the nftables counters.
    """

    def __init__(self, redis_conn: aioredis.Redis, prefix: str = REDIS_KEY_PREFIX) -> None:
        self.redis_conn = redis_conn
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = REDIS_KEY_PREFIX) -> "RedisBaselineStore":
        return cls(aioredis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def key_for(self, mac: str, direction: TrafficDirection) -> str:
        return f"{self.prefix}:{record_key(mac, direction)}"

    async def load(self, mac: str, direction: TrafficDirection) -> BaselineRecord | None:
        key = self.key_for(mac, direction)
        try:
            data = await self.redis_conn.hgetall(key)
        except RedisError as e:
            raise BaselineStoreError(f"Failed to read {key}: {e}") from e
        if not data:
            return None

        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        try:
            return BaselineRecord.from_fields(mac, direction, decoded)
        except (ValueError, TypeError) as e:
            log.warning("baseline_unreadable", key=key, error=str(e))
            return None

    async def save(self, record: BaselineRecord) -> None:
        # Redis hashes hold strings; None is stored as "" and read back as None
        mapping = {k: "" if v is None else str(v) for k, v in record.to_fields().items()}
        key = self.key_for(record.mac, record.direction)
        try:
            await self.redis_conn.hset(key, mapping=mapping)
        except RedisError as e:
            raise BaselineStoreError(f"Failed to write {key}: {e}") from e

    async def close(self) -> None:
        await self.redis_conn.aclose()
