# Shared configuration, helpers, and constants for the workflow engine

import itertools
import json
import os
import threading
import time
import uuid
from pathlib import Path
from datetime import datetime, timezone
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
_package_dir = Path(__file__).resolve().parent          # raisevoice/
for _env_path in [_package_dir / ".env", _package_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Connection strings / secrets
# ---------------------------------------------------------------------------
MONGODB_URL   = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB    = os.getenv("MONGODB_DB", "raisevoice")
JWT_SECRET    = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
LOG_LEVEL     = os.getenv("LOG_LEVEL", "INFO")
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "2"))
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

# ---------------------------------------------------------------------------
# Workflow rules
# ---------------------------------------------------------------------------
INITIAL_CREDITS          = int(os.getenv("INITIAL_CREDITS", "3"))
MAX_NATURAL_CREDITS      = int(os.getenv("MAX_NATURAL_CREDITS", "3"))
REPLENISH_INTERVAL_HOURS = int(os.getenv("REPLENISH_INTERVAL_HOURS", "24"))
MIN_REASON_LENGTH        = int(os.getenv("MIN_REASON_LENGTH", "10"))
STALE_PENDING_DAYS       = int(os.getenv("STALE_PENDING_DAYS", "7"))
DEFAULT_BLOCK_REASON     = "Violation of platform policies"

# Reserved recipient id for notifications addressed to every administrator
ADMIN_POOL = "admins"

# ---------------------------------------------------------------------------
# Priority keyword vocabulary (tier, term); order is reporting order
# ---------------------------------------------------------------------------
PRIORITY_KEYWORDS_FILE = os.getenv("PRIORITY_KEYWORDS_FILE")

DEFAULT_PRIORITY_KEYWORDS = [
    ("urgent", "emergency"),
    ("urgent", "urgent"),
    ("urgent", "immediately"),
    ("urgent", "life threatening"),
    ("urgent", "danger"),
    ("urgent", "accident"),
    ("urgent", "fire"),
    ("urgent", "death"),
    ("urgent", "injured"),
    ("urgent", "collapse"),
    ("urgent", "gas leak"),
    ("urgent", "electrocution"),
    ("urgent", "flood"),
    ("high", "no water"),
    ("high", "contaminated"),
    ("high", "sewage"),
    ("high", "overflow"),
    ("high", "power cut"),
    ("high", "outage"),
    ("high", "broken"),
    ("high", "corruption"),
    ("high", "bribe"),
    ("high", "harassment"),
    ("high", "health"),
    ("high", "disease"),
    ("high", "unsafe"),
]

PRIORITY_TIERS = ("urgent", "high")


def load_priority_keywords(path: str | None = None) -> list[tuple[str, str]]:
    """Return the ordered (tier, term) vocabulary.

    Reads *path* (or ``PRIORITY_KEYWORDS_FILE``) when set; the file holds a JSON
    list of ``{"tier": ..., "term": ...}`` objects or ``[tier, term]`` pairs.
    """
    path = path or PRIORITY_KEYWORDS_FILE
    if not path:
        return list(DEFAULT_PRIORITY_KEYWORDS)
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: keyword vocabulary must be a JSON list")
    pairs = []
    for entry in raw:
        if isinstance(entry, dict):
            tier, term = entry.get("tier"), entry.get("term")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            tier, term = entry
        else:
            raise ValueError(f"{path}: malformed keyword entry {entry!r}")
        if tier not in PRIORITY_TIERS:
            raise ValueError(f"{path}: unknown priority tier {tier!r}")
        if not isinstance(term, str) or not term.strip():
            raise ValueError(f"{path}: blank keyword for tier {tier!r}")
        pairs.append((tier, term.strip()))
    return pairs

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

_key_lock = threading.Lock()
_key_seq = itertools.count()
_last_ms = 0

def push_key() -> str:
    """Creation-ordered opaque key: 13-digit epoch millis, 6-digit sequence, random tail."""
    global _last_ms
    with _key_lock:
        ms = max(int(time.time() * 1000), _last_ms)
        _last_ms = ms
        seq = next(_key_seq) % 1_000_000
    return f"{ms:013d}{seq:06d}{uuid.uuid4().hex[:6]}"
