# tests/test_init_db.py

from __future__ import annotations

import importlib.util
from pathlib import Path

from sqlalchemy import create_engine, inspect

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "init_db.py"


def load_script():
    spec = importlib.util.spec_from_file_location("init_db", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_init_db_creates_subscription_table(tmp_path: Path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'data' / 'fresh.db'}"

    load_script().main(url)

    engine = create_engine(url)
    try:
        assert "subscriptions" in inspect(engine).get_table_names()
    finally:
        engine.dispose()
    assert "subscriptions" in capsys.readouterr().out
