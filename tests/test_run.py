"""
Unit tests for run.py helper behavior.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import Config, ConfigError
import run


def _cfg(tmp_path, **overrides) -> Config:
    values = dict(ledger_db=str(tmp_path / "bridge.db"))
    values.update(overrides)
    return Config(_env_file=None, **values)


def _watcher(head: int = 1000) -> MagicMock:
    watcher = MagicMock()
    watcher.get_current_block = AsyncMock(return_value=head)
    watcher.sync_historical_transfers = AsyncMock(return_value=0)
    watcher.replay_dead_letters = AsyncMock(return_value=(0, 0))
    watcher.start = AsyncMock()
    watcher.wait = AsyncMock()
    watcher.running = True
    return watcher


def _venue() -> MagicMock:
    venue = MagicMock()
    venue.host = "https://test.kalshi.com/trade-api/v2"
    venue.close = AsyncMock()
    return venue


def _server() -> MagicMock:
    server = MagicMock()
    server.serve = AsyncMock()
    return server


class TestParseArgs:
    def test_defaults(self):
        args = run.parse_args([])
        assert args.no_watch is False
        assert args.no_api is False
        assert args.start_block is None
        assert args.replay_dead_letters is False
        assert args.json_log is None

    def test_flags(self):
        args = run.parse_args(["--no-api", "--start-block", "250000000", "--replay-dead-letters"])
        assert args.no_api is True
        assert args.start_block == 250000000
        assert args.replay_dead_letters is True


class TestBuilders:
    def test_minter_disabled_without_share_tokens(self, tmp_path):
        assert run.build_minter(_cfg(tmp_path)) is None

    def test_venue_uses_inline_pem(self, tmp_path):
        cfg = _cfg(tmp_path, kalshi_api_key="key-id", kalshi_private_key_pem="pem")
        with patch("run.KalshiAuth") as auth_cls:
            venue = run.build_venue(cfg)
        auth_cls.assert_called_once_with("key-id", private_key_path=None, private_key_pem="pem")
        assert venue.host == cfg.kalshi_host


class TestRunBridge:
    @pytest.mark.asyncio
    async def test_syncs_history_when_start_block_behind_head(self, tmp_path):
        watcher, venue, server = _watcher(head=1000), _venue(), _server()
        cfg = _cfg(tmp_path, start_block=900)
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=venue), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=server):
            await run.run_bridge(cfg, run.parse_args([]))

        watcher.sync_historical_transfers.assert_awaited_once_with(900)
        watcher.start.assert_awaited_once()
        server.serve.assert_awaited_once()
        watcher.stop.assert_called_once()
        venue.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cli_start_block_overrides_config(self, tmp_path):
        watcher = _watcher(head=1000)
        cfg = _cfg(tmp_path, start_block=900)
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=_venue()), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=_server()):
            await run.run_bridge(cfg, run.parse_args(["--start-block", "950"]))

        watcher.sync_historical_transfers.assert_awaited_once_with(950)

    @pytest.mark.asyncio
    async def test_no_sync_without_start_block(self, tmp_path):
        watcher = _watcher(head=1000)
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=_venue()), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=_server()):
            await run.run_bridge(_cfg(tmp_path), run.parse_args([]))

        watcher.sync_historical_transfers.assert_not_called()
        watcher.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_watch_skips_watcher(self, tmp_path):
        watcher = _watcher()
        watcher.running = False
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=_venue()), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=_server()):
            await run.run_bridge(_cfg(tmp_path, start_block=1), run.parse_args(["--no-watch"]))

        watcher.start.assert_not_called()
        watcher.sync_historical_transfers.assert_not_called()
        watcher.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_replay_before_watching(self, tmp_path):
        watcher = _watcher()
        order = []
        watcher.replay_dead_letters.side_effect = lambda: order.append("replay") or (0, 0)
        watcher.start.side_effect = lambda: order.append("start")
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=_venue()), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=_server()):
            await run.run_bridge(_cfg(tmp_path), run.parse_args(["--replay-dead-letters"]))

        assert order == ["replay", "start"]

    @pytest.mark.asyncio
    async def test_cleanup_on_failure(self, tmp_path):
        watcher = _watcher()
        venue = _venue()
        server = _server()
        server.serve.side_effect = OSError("address in use")
        with patch("run.build_watcher", return_value=watcher), \
                patch("run.build_venue", return_value=venue), \
                patch("run.build_minter", return_value=None), \
                patch("run.build_server", return_value=server):
            with pytest.raises(OSError):
                await run.run_bridge(_cfg(tmp_path), run.parse_args([]))

        watcher.stop.assert_called_once()
        venue.close.assert_awaited_once()


class TestMain:
    def test_config_error_exits_1(self):
        with patch("run.load_config", side_effect=ConfigError("OWNER_PRIVATE_KEY is required")), \
                patch("run.setup_logging"):
            with pytest.raises(SystemExit) as exc_info:
                run.main([])
        assert exc_info.value.code == 1

    def test_fatal_error_exits_1(self, tmp_path):
        def _fail(coro):
            coro.close()
            raise RuntimeError("boom")

        with patch("run.load_config", return_value=_cfg(tmp_path)), \
                patch("run.setup_logging", return_value=str(tmp_path / "bridge.log")), \
                patch("run.asyncio.run", side_effect=_fail):
            with pytest.raises(SystemExit) as exc_info:
                run.main(["--no-api"])
        assert exc_info.value.code == 1
