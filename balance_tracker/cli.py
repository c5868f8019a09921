import argparse
import asyncio
import logging
import signal
import sys
from datetime import date

from .common.config import ConfigError, load_tracker_config, settings
from .common.logging_setup import setup_logging
from .common.db import close_pool, connect, test_connection

from tracker_services.balances import (
    BalanceStorageService,
    BlockResolver,
    ChainClientRegistry,
    RateLimiter,
    WalletTracker,
    get_table_stats,
    init_schema,
)


async def _with_services(config, action):
    """Build store, clients and limiter, run `action`, then release them."""
    conn = connect()
    registry = ChainClientRegistry.from_config(config, timeout=settings.http_timeout)
    try:
        store = BalanceStorageService(conn)
        rate_limiter = RateLimiter.from_config(config)
        return await action(store, registry, rate_limiter)
    finally:
        await registry.close()
        conn.close()


def cmd_init_db(_: argparse.Namespace) -> None:
    setup_logging()
    logging.info("initializing database schema")

    conn = connect()
    try:
        init_schema(conn)
    finally:
        conn.close()

    logging.info("schema applied")


def cmd_health(args: argparse.Namespace) -> None:
    setup_logging()
    logging.info("testing database connectivity")
    try:
        db_ok = test_connection()
    finally:
        close_pool()
    logging.info({"db": "ok" if db_ok else "unreachable"})
    if not db_ok:
        sys.exit(1)

    config = load_tracker_config(args.config)

    async def check_chains(_store, registry, rate_limiter):
        for network_id in registry.network_ids():
            network = config.get_network(network_id)
            client = registry.get(network_id)
            number, timestamp = await rate_limiter.execute(
                network.id, client.get_latest_block, "get_latest_block"
            )
            logging.info({"network": network.name, "block": number, "timestamp": timestamp})

    asyncio.run(_with_services(config, check_chains))


def cmd_update(args: argparse.Namespace) -> None:
    setup_logging()
    config = load_tracker_config(args.config)

    async def update(store, registry, rate_limiter):
        tracker = WalletTracker(config, store, registry, rate_limiter)
        return await tracker.update_balances()

    summary = asyncio.run(_with_services(config, update))
    logging.info({"update": summary})


def cmd_run(args: argparse.Namespace) -> None:
    setup_logging()
    config = load_tracker_config(args.config)

    async def run(store, registry, rate_limiter):
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        tracker = WalletTracker(config, store, registry, rate_limiter)
        await tracker.initialize()
        await tracker.run_forever(stop_event)

    asyncio.run(_with_services(config, run))
    logging.info("tracker stopped")


def cmd_resolve_block(args: argparse.Namespace) -> None:
    setup_logging()
    config = load_tracker_config(args.config)

    network = config.get_network(args.network)
    if network is None:
        raise ConfigError(f"Network {args.network} is not configured")
    date_str = args.date.isoformat()

    async def resolve(store, registry, rate_limiter):
        resolver = BlockResolver(store, registry, rate_limiter, config.tuning)
        return await resolver.resolve_block(network, date_str)

    mapping = asyncio.run(_with_services(config, resolve))
    logging.info({
        "network": network.name,
        "date": date_str,
        "block_number": mapping.block_number,
        "block_timestamp": mapping.block_timestamp,
    })


def cmd_clear_block_cache(args: argparse.Namespace) -> None:
    setup_logging()
    conn = connect()
    try:
        deleted = BalanceStorageService(conn).clear_block_mappings(args.network)
    finally:
        conn.close()
    logging.info({"block_mappings_deleted": deleted})


def cmd_stats(_: argparse.Namespace) -> None:
    setup_logging()
    conn = connect()
    try:
        stats = get_table_stats(conn)
    finally:
        conn.close()
    logging.info({"stats": stats})


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("balance-tracker CLI")
    p.add_argument("--config", help="tracker config file (default: $TRACKER_CONFIG)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db").set_defaults(func=cmd_init_db)
    sub.add_parser("health").set_defaults(func=cmd_health)
    sub.add_parser("update").set_defaults(func=cmd_update)
    sub.add_parser("run").set_defaults(func=cmd_run)
    sub.add_parser("stats").set_defaults(func=cmd_stats)

    p_resolve = sub.add_parser("resolve-block")
    p_resolve.add_argument("--network", type=int, required=True)
    p_resolve.add_argument("--date", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    p_resolve.set_defaults(func=cmd_resolve_block)

    p_clear = sub.add_parser("clear-block-cache")
    p_clear.add_argument("--network", type=int)
    p_clear.set_defaults(func=cmd_clear_block_cache)

    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except ConfigError as e:
        logging.error(f"configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
