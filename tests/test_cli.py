"""Tests for the command-line entry point."""

import json

import pytest

from nft_auction_indexer.__main__ import main
from nft_auction_indexer.config import clear_settings_cache


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_init_db_creates_schema(tmp_path) -> None:
    assert main(["init-db"]) == 0
    assert (tmp_path / "cli.db").exists()


def test_active_on_empty_store(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["init-db"]) == 0

    assert main(["active"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_unknown_auction_exits_nonzero(capsys: pytest.CaptureFixture[str]) -> None:
    main(["init-db"])

    assert main(["auction", "C1", "I1"]) == 1
    assert json.loads(capsys.readouterr().out) is None


def test_invalid_config_exits_with_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "mysql://localhost/db")
    clear_settings_cache()

    assert main(["active"]) == 2
