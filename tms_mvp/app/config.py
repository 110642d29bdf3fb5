from __future__ import annotations

import os

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")

# Read at call time by db(); tests point this at a temp file.
DB_PATH = os.environ.get("TMS_DB_PATH", os.path.join(DATA_DIR, "tms.db"))

# Lock handling for write transactions.
# - LOCK_TIMEOUT bounds a single wait on the sqlite write lock.
# - LOCK_ATTEMPTS bounds how many times a locked/busy transaction is retried.
LOCK_TIMEOUT = float(os.environ.get("TMS_LOCK_TIMEOUT", "10.0"))
LOCK_ATTEMPTS = max(1, int(os.environ.get("TMS_LOCK_ATTEMPTS", "3")))
LOCK_BACKOFF = float(os.environ.get("TMS_LOCK_BACKOFF", "0.05"))

REVIEW_WEBHOOK_URL = os.environ.get("TMS_REVIEW_WEBHOOK_URL", "").strip()

LOG_LEVEL = os.environ.get("TMS_LOG_LEVEL", "INFO").upper()

SEED_DEMO = os.environ.get("TMS_SEED_DEMO", "1").strip().lower() not in ("0", "false", "no", "")
