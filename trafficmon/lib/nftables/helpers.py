import asyncio
import json
from dataclasses import dataclass

import structlog

from trafficmon.lib.constants import NFT_CHAIN_NAME, NFT_TABLE_FAMILY, NFT_TABLE_NAME
from trafficmon.lib.nftables.rule import TrafficDirection

log = structlog.get_logger(__name__)


class NftError(RuntimeError):
    pass


@dataclass
class NftCommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class NftClientConfig:
    family: str = NFT_TABLE_FAMILY
    table: str = NFT_TABLE_NAME
    chain: str = NFT_CHAIN_NAME
    nft_binary: str = "nft"


class NftClient:
    """
    Thin async wrapper over the nft binary for the one table/chain the monitor owns.
    Listings are read as JSON (nft -j), mutations use the regular nft syntax.
    """

    def __init__(self, config: NftClientConfig):
        self.config = config

    async def _cmd(self, *args: str) -> NftCommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.nft_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise NftError(f"cannot execute {self.config.nft_binary}: {e}") from e

        stdout, stderr = await proc.communicate()
        result = NftCommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace").strip() if stderr else "",
        )
        log.debug("nft_command", args=" ".join(args), returncode=result.returncode)
        return result

    async def _checked(self, *args: str) -> NftCommandResult:
        result = await self._cmd(*args)
        if not result.ok:
            raise NftError(f"nft {' '.join(args)} failed ({result.returncode}): {result.stderr or 'no output'}")
        return result

    async def table_exists(self) -> bool:
        result = await self._cmd("list", "table", self.config.family, self.config.table)
        return result.ok

    async def chain_exists(self) -> bool:
        result = await self._cmd("list", "chain", self.config.family, self.config.table, self.config.chain)
        return result.ok

    async def ensure_container(self) -> None:
        """Create the table and the forward-hook chain if they are missing. Existing rules are never touched."""
        c = self.config

        if not await self.table_exists():
            log.info("creating_nft_table", family=c.family, table=c.table)
            await self._checked("add", "table", c.family, c.table)
        else:
            log.debug("nft_table_exists", family=c.family, table=c.table)

        if not await self.chain_exists():
            log.info("creating_nft_chain", family=c.family, table=c.table, chain=c.chain)
            await self._checked(
                "add", "chain", c.family, c.table, c.chain,
                "{ type filter hook forward priority 0; policy accept; }",
            )
        else:
            log.debug("nft_chain_exists", family=c.family, table=c.table, chain=c.chain)

    async def list_chain(self) -> dict:
        c = self.config
        result = await self._checked("-j", "list", "chain", c.family, c.table, c.chain)

        if not result.stdout.strip():
            return {}

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise NftError(f"Failed to parse nftables JSON output: {e}") from e

    async def add_counter_rule(self, address: str, direction: TrafficDirection, tag: str) -> None:
        c = self.config
        await self._checked(
            "add", "rule", c.family, c.table, c.chain,
            "ip", direction.match_field, address,
            "counter", "comment", f'"{tag}"',
        )

    async def delete_rule(self, handle: int) -> None:
        c = self.config
        await self._checked("delete", "rule", c.family, c.table, c.chain, "handle", str(handle))
