"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from route_sync import cli
from route_sync.ledger import ProgressLedger


@pytest.fixture
def data_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("FLEET_URL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "ROUTE_SYNC_EXTRACTOR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATA_PATH", str(tmp_path))
    return tmp_path


def test_status_prints_route_progress(data_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ledger = ProgressLedger(data_path / "db.json")
    ledger.mark_downloaded("route", "ecamera", "2024-01-01T00:00:00+00:00")
    ledger.advance("route", "ecamera", 3725.0)

    assert cli.main(["status"]) == 0

    output = capsys.readouterr().out
    assert "route" in output
    assert "ecamera: downloaded 2024-01-01T00:00:00+00:00, processed -, uploaded 1:02:05" in output


def test_status_json_dumps_ledger(data_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    ProgressLedger(data_path / "db.json").advance("route", "dcamera", 60.0)

    assert cli.main(["status", "--json"]) == 0

    document = json.loads(capsys.readouterr().out)
    assert document["routes"]["route"]["cameras"]["dcamera"]["telegram"]["uploaded_until"] == 60.0


def test_status_with_empty_ledger(data_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["status"]) == 0

    assert "No routes recorded." in capsys.readouterr().out


def test_corrupt_ledger_exits_with_error(data_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (data_path / "db.json").write_text("[")

    assert cli.main(["status"]) == 1
    assert "Unable to load ledger" in capsys.readouterr().err


def test_invalid_configuration_is_reported(
    data_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("MAX_VIDEOS", "-3")

    assert cli.main(["status"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_serve_runs_uvicorn(data_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    uvicorn = pytest.importorskip("uvicorn")
    calls: list[dict] = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))

    assert cli.main(["serve", "--port", "9000", "--log-level", "debug"]) == 0

    assert calls == [{"host": "0.0.0.0", "port": 9000, "log_level": "debug"}]


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        (["serve"], "INFO"),
        (["--log-level", "warning", "serve"], "warning"),
        (["serve", "--log-level", "debug"], "debug"),
        (["--log-level", "warning", "status", "--log-level", "error"], "error"),
    ],
)
def test_log_level_is_accepted_on_either_side_of_the_command(
    argv: list[str], expected: str
) -> None:
    assert cli.build_parser().parse_args(argv).log_level == expected
