"""
tests/unit/test_run_bot.py - CLI entrypoint.
"""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

import run_bot


def test_config_error_exits_with_code_2(tmp_path):
    path = tmp_path / "bot.yaml"
    path.write_text("chain:\n  rpc_urls: []\n", encoding="utf-8")

    with patch("run_bot.setup_logging"), patch("run_bot.asyncio.run") as run:
        result = CliRunner().invoke(run_bot.main, ["--config", str(path), "--no-json-logs"])

    assert result.exit_code == 2
    run.assert_not_called()


def test_unknown_key_exits_with_code_2(tmp_path):
    path = tmp_path / "bot.yaml"
    path.write_text("chain:\n  chain_name: bsc\n", encoding="utf-8")

    with patch("run_bot.setup_logging"), patch("run_bot.asyncio.run") as run:
        result = CliRunner().invoke(run_bot.main, ["--config", str(path)])

    assert result.exit_code == 2
    run.assert_not_called()


def test_dry_run_starts_loop(tmp_path):
    path = tmp_path / "bot.yaml"
    path.write_text(
        "chain:\n"
        "  rpc_urls: [\"https://rpc.test\"]\n"
        "protocol:\n"
        "  comptroller: \"0xfd36e2c2a6789db23113685031d7f16329158384\"\n"
        "  oracle: \"0xd8b6da2bfec71d684d3e2a2fc9492ddad5c3787f\"\n"
        "  markets:\n"
        "    - symbol: vBNB\n"
        "      address: \"0xa07c5b74c9b40447a954e1466938b865b6bbea36\"\n",
        encoding="utf-8",
    )

    with patch("run_bot.setup_logging"), patch("run_bot.asyncio.run") as run:
        result = CliRunner().invoke(run_bot.main, ["--config", str(path), "--dry-run"])

    assert result.exit_code == 0, result.output
    run.assert_called_once()
    run.call_args.args[0].close()


async def fire_reset(bot):
    """Install handlers on the running loop and deliver SIGUSR1 by hand."""
    loop = asyncio.get_running_loop()
    with patch.object(loop, "add_signal_handler") as add:
        run_bot.install_signal_handlers(bot)
    handlers = {call.args[0]: call.args[1] for call in add.call_args_list}
    handlers[signal.SIGUSR1]()
    tasks = list(run_bot._background)
    await asyncio.gather(*tasks, return_exceptions=True)
    await asyncio.sleep(0)
    return tasks


@pytest.mark.asyncio
async def test_reset_signal_failure_is_logged():
    bot = MagicMock()
    bot.reset_circuit_breaker = AsyncMock(side_effect=RuntimeError("oracle down"))

    with patch("run_bot.logger") as logger:
        tasks = await fire_reset(bot)

    assert len(tasks) == 1
    bot.reset_circuit_breaker.assert_awaited_once()
    logger.error.assert_called_once()
    assert isinstance(logger.error.call_args.kwargs["exc_info"], RuntimeError)
    assert not run_bot._background


@pytest.mark.asyncio
async def test_reset_signal_success_is_quiet():
    bot = MagicMock()
    bot.reset_circuit_breaker = AsyncMock()

    with patch("run_bot.logger") as logger:
        await fire_reset(bot)

    bot.reset_circuit_breaker.assert_awaited_once()
    logger.error.assert_not_called()
    assert not run_bot._background
