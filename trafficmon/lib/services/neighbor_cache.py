import asyncio
import json

import structlog

log = structlog.get_logger(__name__)


class NeighborCache:
    """Fallback ip -> mac lookup through the kernel neighbor table (`ip -j neigh show <ip>`)."""

    def __init__(self, ip_binary: str = "ip") -> None:
        self.ip_binary = ip_binary

    async def _cmd(self, *args: str) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ip_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.debug("neighbor_lookup_failed", error=str(e))
            return None

        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            return None
        return stdout.decode(errors="replace") if stdout else None

    async def lookup(self, ip: str) -> str | None:
        out = await self._cmd("-j", "neigh", "show", ip)
        if not out or not out.strip():
            return None

        try:
            entries = json.loads(out)
        except json.JSONDecodeError:
            log.debug("neighbor_output_unparsable", ip=ip)
            return None

        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or entry.get("dst") != ip:
                continue
            lladdr = entry.get("lladdr")
            if isinstance(lladdr, str) and lladdr:
                return lladdr.lower()

        return None
