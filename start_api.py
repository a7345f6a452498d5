#!/usr/bin/env python3
"""
Wait for the database, run migrations with the app's DATABASE_URL, then exec uvicorn.
"""
import os
import sys

from app.core.config import settings
from app.core.log_config import configure_logging

configure_logging(settings.LOG_LEVEL)

# 1) Wait for DB
import wait_for_db  # noqa: F401,E402

# 2) Run migrations using the same settings as the app
from alembic.config import Config  # noqa: E402
from alembic import command  # noqa: E402

alembic_cfg = Config(os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"))
alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
command.upgrade(alembic_cfg, "head")

# 3) Start uvicorn (replace current process)
os.execv(
    sys.executable,
    [sys.executable, "-m", "uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", os.getenv("PORT", "8000")],
)
