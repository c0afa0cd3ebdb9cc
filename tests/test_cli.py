from __future__ import annotations

from unittest.mock import patch

import pytest

from stockcast.api.auth import decode_token
from stockcast.cli import main
from stockcast.config import AppConfig


class TestCLIParsing:
    def test_no_command_fails(self) -> None:
        with pytest.raises(SystemExit):
            main([])

    def test_help_flag(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--help"])
        assert exc_info.value.code == 0

    def test_migrate_command(self) -> None:
        with patch("stockcast.cli.cmd_migrate") as mock_cmd:
            main(["migrate"])
            mock_cmd.assert_called_once()

    def test_evaluate_command(self) -> None:
        with patch("stockcast.cli.cmd_evaluate") as mock_cmd:
            main(["evaluate"])
            mock_cmd.assert_called_once()

    def test_scheduler_interval(self) -> None:
        with patch("stockcast.cli.cmd_scheduler") as mock_cmd:
            main(["scheduler", "--interval", "30"])
            args = mock_cmd.call_args[0][0]
            assert args.interval == 30

    def test_price_refresh_command(self) -> None:
        with patch("stockcast.cli.cmd_price_refresh") as mock_cmd:
            main(["price-refresh"])
            mock_cmd.assert_called_once()

    def test_add_instrument_with_tickers(self) -> None:
        with patch("stockcast.cli.cmd_add_instrument") as mock_cmd:
            main(["add-instrument", "AAPL", "MSFT", "--name", "Big Tech"])
            args = mock_cmd.call_args[0][0]
            assert args.tickers == ["AAPL", "MSFT"]
            assert args.name == "Big Tech"

    def test_add_instrument_requires_ticker(self) -> None:
        with pytest.raises(SystemExit):
            main(["add-instrument"])

    def test_status_limit(self) -> None:
        with patch("stockcast.cli.cmd_status") as mock_cmd:
            main(["status", "--limit", "5"])
            args = mock_cmd.call_args[0][0]
            assert args.limit == 5

    def test_verbose_flag(self) -> None:
        with patch("stockcast.cli.cmd_status") as mock_cmd:
            main(["-v", "status"])
            args = mock_cmd.call_args[0][0]
            assert args.verbose is True


class TestTokenCommand:
    def test_prints_token(self, capsys) -> None:
        config = AppConfig(db_dsn="", auth_secret_key="cli-secret")
        with patch("stockcast.cli.load_config", return_value=config):
            main(["token", "alice", "--hours", "2"])
        token = capsys.readouterr().out.strip()
        assert decode_token(token, "cli-secret") == "alice"

    def test_requires_secret(self) -> None:
        with patch("stockcast.cli.load_config", return_value=AppConfig(db_dsn="")):
            with pytest.raises(SystemExit) as exc_info:
                main(["token", "alice"])
        assert exc_info.value.code == 1
