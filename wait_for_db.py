import logging
import os
import time
from urllib.parse import urlparse

import psycopg2

logger = logging.getLogger("wait_for_db")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise SystemExit("DATABASE_URL is not set")

# SQLAlchemy URLs may carry a driver suffix psycopg2 does not understand
url = DATABASE_URL.replace("postgresql+psycopg2://", "postgresql://").replace("postgres://", "postgresql://")
p = urlparse(url)

if p.scheme.startswith("postgresql"):
    host = p.hostname or "db"
    port = p.port or 5432
    user = p.username or "villapay"
    password = p.password or "villapay"
    dbname = (p.path or "/villapay").lstrip("/") or "villapay"

    timeout_s = int(os.getenv("DB_WAIT_TIMEOUT", "60"))
    start = time.time()

    logger.info(f"Waiting for Postgres at {host}:{port} db={dbname} user={user} (timeout={timeout_s}s)")
    while True:
        try:
            conn = psycopg2.connect(host=host, port=port, user=user, password=password, dbname=dbname)
            conn.close()
            logger.info("Postgres is ready")
            break
        except psycopg2.OperationalError as e:
            if time.time() - start > timeout_s:
                logger.error(f"Timed out waiting for DB. Last error: {e}")
                raise
            time.sleep(1)
