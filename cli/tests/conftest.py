"""Shared fixtures for ledgerctl tests.

Every test runs against its own SQLite file so that successive CLI
invocations, each with a fresh engine, see the same data.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def ledger_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "ledger.db"
    monkeypatch.setenv("LEDGER_DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("LEDGER_WELCOME_CREDITS", "1.00")
    monkeypatch.setenv("LEDGER_DEFAULT_MARKUP_MULTIPLIER", "1.5")
    return db_path


@pytest.fixture
def pricing_file(tmp_path: Path) -> Path:
    path = tmp_path / "pricing.json"
    path.write_text(
        json.dumps(
            [
                {
                    "model_id": "gpt-4o-mini",
                    "provider": "openai",
                    "input_price_per_million": "0.15",
                    "output_price_per_million": "0.60",
                },
                {
                    "model_id": "claude-sonnet",
                    "provider": "anthropic",
                    "input_price_per_million": 3,
                    "output_price_per_million": 15,
                    "markup_multiplier": "1.2",
                },
            ]
        ),
        encoding="utf-8",
    )
    return path
