# -*- coding: utf-8 -*-
import os
from typing import List


def safe_int(x, default=0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def parse_id_list(raw: str) -> List[int]:
    ids = []
    for part in (raw or "").replace(";", ",").split(","):
        part = part.strip()
        if not part:
            continue
        value = safe_int(part, None)
        if value is not None:
            ids.append(value)
    return ids


# =========================
# CONFIG
# =========================
TOKEN_ENV = "TELEGRAM_TOKEN"

ADMIN_USER_IDS: List[int] = parse_id_list(os.getenv("ADMIN_USER_IDS", ""))

DB_PATH = os.getenv("QUEST_DB_PATH", "database.sqlite")
PERSIST_FILE = os.getenv("PERSIST_FILE", "cyberquest.pickle")

PORT = safe_int(os.getenv("PORT", "3000"), 3000)
FRONTEND_URL = os.getenv("FRONTEND_URL", "")

MAX_HINTS = safe_int(os.getenv("MAX_HINTS", "3"), 3)
MAX_TEAM_SIZE = safe_int(os.getenv("MAX_TEAM_SIZE", "3"), 3)

# seconds
DB_BUSY_TIMEOUT = safe_int(os.getenv("DB_BUSY_TIMEOUT", "30"), 30)
ADMIN_SESSION_TTL = safe_int(os.getenv("ADMIN_SESSION_TTL", "900"), 900)
INIT_DATA_MAX_AGE = safe_int(os.getenv("INIT_DATA_MAX_AGE", "86400"), 86400)
