import asyncio
import contextlib
from typing import Any

import structlog

from trafficmon.lib.services.lease_watcher import start_lease_watcher
from trafficmon.lib.services.publish_cycle import PublishCycle
from trafficmon.lib.services.rule_sync import RuleSynchronizer

log = structlog.get_logger(__name__)


async def traffic_monitor_loop(
    rule_sync: RuleSynchronizer,
    publish_cycle: PublishCycle,
    *,
    sync_interval: float = 60,
    publish_interval: float = 60,
    lease_file_path: str | None = None,
) -> None:
    """
    Daemon mode. Every cycle goes through one command queue so a sync and a publish never overlap.
    Lease file changes enqueue an extra sync. Runs until cancelled.
    """
    loop = asyncio.get_running_loop()
    command_queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=64)
    queued: set[str] = set()

    def enqueue_nowait(command: str, payload: dict[str, Any]) -> None:
        # Same command already waiting, the pending run covers this trigger
        if command in queued:
            return
        try:
            command_queue.put_nowait((command, payload))
            queued.add(command)
        except asyncio.QueueFull:
            log.warning("command_queue_full", command=command)

    async def periodic_enqueue(command: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            enqueue_nowait(command, {"reason": "timer"})

    def on_leases_changed() -> None:
        # Called from the watchdog timer thread
        loop.call_soon_threadsafe(enqueue_nowait, "sync", {"reason": "lease_change"})

    async def handle_command(command: str, payload: dict[str, Any]) -> None:
        if command == "sync":
            try:
                await rule_sync.run_cycle()
            except Exception as e:
                log.error("sync_cycle_error", error=str(e), reason=payload.get("reason"), exc_info=True)
            return

        if command == "publish":
            try:
                await publish_cycle.run_cycle()
            except Exception as e:
                log.error("publish_cycle_error", error=str(e), reason=payload.get("reason"), exc_info=True)
            return

        log.warning("unknown_command", command=command)

    observer = None
    lease_handler = None
    if lease_file_path:
        try:
            observer, lease_handler = start_lease_watcher(lease_file_path, on_leases_changed)
            log.info("lease_watcher_started", path=lease_file_path)
        except OSError as e:
            log.warning("lease_watcher_unavailable", path=lease_file_path, error=str(e))

    periodic_tasks = [
        asyncio.create_task(periodic_enqueue("sync", sync_interval)),
        asyncio.create_task(periodic_enqueue("publish", publish_interval)),
    ]

    enqueue_nowait("sync", {"reason": "startup"})
    enqueue_nowait("publish", {"reason": "startup"})

    try:
        while True:
            command, payload = await command_queue.get()
            queued.discard(command)
            await handle_command(command, payload)
    finally:
        for task in periodic_tasks:
            task.cancel()
        for task in periodic_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if lease_handler is not None:
            lease_handler.cancel()
        if observer is not None:
            observer.stop()
            observer.join(timeout=2)
