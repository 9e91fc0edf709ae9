#!/usr/bin/env python3
"""
run_bot.py - CLI entrypoint for the liquidation bot.

Usage:
    python run_bot.py
    python run_bot.py --dry-run --log-level DEBUG --no-json-logs
    python run_bot.py --config /etc/liqbot/bot.yaml

Signals:
    SIGINT / SIGTERM  graceful stop (an in-flight settlement finishes)
    SIGUSR1           manual circuit breaker reset
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from core.exceptions import ConfigError
from core.logging import get_logger, set_global_context, setup_logging
from strategy.config import load_bot_config
from strategy.loop import LiquidationLoop, build_loop

logger = get_logger("liqbot.main")

VERSION = "0.1.0"

# strong references to signal-spawned tasks until they finish
_background: set = set()


def _reset_done(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Circuit breaker reset failed", exc_info=error)


def install_signal_handlers(bot: LiquidationLoop) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, bot.request_stop)

    def _reset() -> None:
        logger.warning("SIGUSR1 received, resetting circuit breaker")
        task = asyncio.ensure_future(bot.reset_circuit_breaker())
        _background.add(task)
        task.add_done_callback(_reset_done)

    if hasattr(signal, "SIGUSR1"):
        loop.add_signal_handler(signal.SIGUSR1, _reset)


async def run(bot: LiquidationLoop) -> None:
    install_signal_handlers(bot)
    await bot.run_forever()


@click.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML config file (default: bundled config/bot.yaml)",
)
@click.option(
    "--log-level",
    "-l",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Log level",
)
@click.option(
    "--json-logs/--no-json-logs",
    default=True,
    help="Use JSON log format",
)
@click.option(
    "--log-file",
    default=None,
    type=click.Path(dir_okay=False),
    help="Also write logs to this file",
)
@click.option(
    "--dry-run/--live",
    default=None,
    help="Log settlements instead of sending them (overrides config)",
)
def main(
    config_path: Optional[Path],
    log_level: str,
    json_logs: bool,
    log_file: Optional[str],
    dry_run: Optional[bool],
) -> None:
    """
    LIQBOT - lending protocol liquidation bot.

    Watches borrowers, scans for profitable liquidations and settles them
    through the flash-liquidation contract.
    """
    setup_logging(level=log_level, json_output=json_logs, log_file=log_file)
    set_global_context(service="liqbot", version=VERSION)

    try:
        config = load_bot_config(config_path, dry_run=dry_run)
        bot = build_loop(config)
    except ConfigError as e:
        logger.error(
            f"Configuration error: {e.message}",
            extra={"context": e.details},
        )
        sys.exit(2)

    logger.info(
        "Starting LIQBOT",
        extra={"context": {
            "chain_id": config.chain.chain_id,
            "rpc_endpoints": len(config.chain.rpc_urls),
            "markets": [m.symbol for m in config.protocol.markets],
            "dry_run": config.execution.dry_run,
            "min_profit_native": str(config.strategy.min_profit_native),
        }},
    )

    asyncio.run(run(bot))


if __name__ == "__main__":
    main()
