#!/usr/bin/env python3
import argparse
import asyncio
import sys

import structlog

from trafficmon.lib.config import ConfigError, TrafficMonitorConfig, load_config
from trafficmon.lib.dhcp.lease_service import DnsmasqLeaseService
from trafficmon.lib.log import LOG_LEVELS, configure_logging
from trafficmon.lib.mqtt.publisher import MQTTPublisher, MQTTPublisherConfig
from trafficmon.lib.nftables.counters import CounterReader
from trafficmon.lib.nftables.helpers import NftClient, NftClientConfig
from trafficmon.lib.services.baseline_store import BaselineStore, FileBaselineStore, RedisBaselineStore
from trafficmon.lib.services.discovery import DiscoveryPublisher
from trafficmon.lib.services.identity_resolver import IdentityResolver
from trafficmon.lib.services.neighbor_cache import NeighborCache
from trafficmon.lib.services.publish_cycle import PublishCycle
from trafficmon.lib.services.rule_sync import RuleSynchronizer
from trafficmon.lib.services.tmon_loop import traffic_monitor_loop
from trafficmon.lib.services.traffic_state import TrafficStateEngine

log = structlog.get_logger("trafficmon")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trafficmon",
        description="Per-device nftables traffic accounting published to MQTT",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--log-level", choices=list(LOG_LEVELS), help="debug|info|warn|error")
    parser.add_argument("--log-format", choices=["json", "console"])
    parser.add_argument("--leases-file", help="dnsmasq lease file")
    parser.add_argument("--table", dest="table_name", help="nft table name")
    parser.add_argument("--chain", dest="chain_name", help="nft chain name")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="create/delete counter rules to match the DHCP leases")

    for name, help_text in (
        ("publish", "sample counters once and publish usage to MQTT"),
        ("run", "run sync and publish periodically"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--broker", help="MQTT broker host")
        p.add_argument("--broker-port", type=int)
        p.add_argument("--mqtt-user")
        p.add_argument("--mqtt-password")
        p.add_argument("--base-topic")
        p.add_argument("--discovery-prefix")
        p.add_argument("--bw-interval", type=float, help="seconds between counter snapshots")
        p.add_argument("--state-backend", choices=["file", "redis"])
        p.add_argument("--state-dir")
        p.add_argument("--redis-url")
        p.add_argument("--dry-run", action="store_true", default=None, help="log MQTT messages instead of sending")

        if name == "run":
            p.add_argument("--sync-interval", type=float)
            p.add_argument("--publish-interval", type=float)
            p.add_argument("--no-watch-leases", dest="watch_leases", action="store_false", default=None)

    return parser


def _overrides(args: argparse.Namespace) -> dict:
    skip = {"config", "command"}
    return {k: v for k, v in vars(args).items() if k not in skip and v is not None}


def build_nft_client(cfg: TrafficMonitorConfig) -> NftClient:
    return NftClient(NftClientConfig(family=cfg.table_family, table=cfg.table_name, chain=cfg.chain_name))


def build_baseline_store(cfg: TrafficMonitorConfig) -> BaselineStore:
    if cfg.state_backend == "redis":
        return RedisBaselineStore.from_url(cfg.redis_url, prefix=cfg.redis_prefix)
    return FileBaselineStore(cfg.state_dir)


def build_publisher(cfg: TrafficMonitorConfig) -> MQTTPublisher:
    return MQTTPublisher(MQTTPublisherConfig(
        host=cfg.broker,
        port=cfg.broker_port,
        username=cfg.mqtt_user,
        password=cfg.mqtt_password,
        client_id=cfg.mqtt_client_id,
        keepalive=cfg.mqtt_keepalive,
        publish_timeout=cfg.mqtt_publish_timeout,
        dry_run=cfg.dry_run,
    ))


def build_rule_sync(cfg: TrafficMonitorConfig, nft: NftClient) -> RuleSynchronizer:
    return RuleSynchronizer(nft, DnsmasqLeaseService(cfg.leases_file), namespace=cfg.tag)


def build_publish_cycle(
    cfg: TrafficMonitorConfig,
    nft: NftClient,
    store: BaselineStore,
    publisher: MQTTPublisher,
) -> PublishCycle:
    engine = TrafficStateEngine(CounterReader(nft, namespace=cfg.tag), store, bw_interval=cfg.bw_interval)
    resolver = IdentityResolver(DnsmasqLeaseService(cfg.leases_file), NeighborCache())
    discovery = DiscoveryPublisher(publisher, base_topic=cfg.base_topic, discovery_prefix=cfg.discovery_prefix)
    return PublishCycle(nft, engine, resolver, discovery, broker_host=cfg.broker)


async def run_sync(cfg: TrafficMonitorConfig) -> int:
    report = await build_rule_sync(cfg, build_nft_client(cfg)).run_cycle()
    return 1 if report.status == "FAILED" else 0


async def run_publish(cfg: TrafficMonitorConfig) -> int:
    nft = build_nft_client(cfg)
    store = build_baseline_store(cfg)
    publisher = build_publisher(cfg)

    await publisher.connect()
    try:
        report = await build_publish_cycle(cfg, nft, store, publisher).run_cycle()
    finally:
        await publisher.close()
        await store.close()

    return 1 if report.status == "FAILED" else 0


async def run_daemon(cfg: TrafficMonitorConfig) -> int:
    nft = build_nft_client(cfg)
    store = build_baseline_store(cfg)
    publisher = build_publisher(cfg)

    await publisher.connect()
    try:
        await traffic_monitor_loop(
            build_rule_sync(cfg, nft),
            build_publish_cycle(cfg, nft, store, publisher),
            sync_interval=cfg.sync_interval,
            publish_interval=cfg.publish_interval,
            lease_file_path=cfg.leases_file if cfg.watch_leases else None,
        )
    finally:
        await publisher.close()
        await store.close()
    return 0


COMMANDS = {
    "sync": run_sync,
    "publish": run_publish,
    "run": run_daemon,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(args.config, overrides=_overrides(args))
    except ConfigError as e:
        print(f"trafficmon: configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(cfg.log_level, cfg.log_format)
    log.info(
        "starting",
        command=args.command,
        broker=cfg.broker,
        base_topic=cfg.base_topic,
        discovery=cfg.discovery_prefix,
        table=f"{cfg.table_family}/{cfg.table_name}",
        chain=cfg.chain_name,
        tag=cfg.tag,
        leases=cfg.leases_file,
        level=cfg.log_level,
    )

    try:
        return asyncio.run(COMMANDS[args.command](cfg))
    except KeyboardInterrupt:
        log.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
