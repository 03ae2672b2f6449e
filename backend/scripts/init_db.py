"""Create the subscription tables for local development.

Usage (after `pip install -e .`):
    python backend/scripts/init_db.py [DATABASE_URL]
"""
from __future__ import annotations

import sys
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.engine import make_url

from app.config import get_settings
from app.database import build_engine, create_tables


def main(database_url: Optional[str] = None) -> None:
    database_url = database_url or get_settings().database_url
    # SQLite 会自动创建数据库文件所在目录；其他数据库需要事先建库
    engine = build_engine(database_url)
    try:
        create_tables(engine)
        tables = sorted(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    print(f"Tables ready in {make_url(database_url).render_as_string(hide_password=True)}: {', '.join(tables)}")


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
