"""
Schemata Core — connection loading, SQL execution, savepoints.

Infrastructure plumbing. Every other module depends on core. No schema logic here.

Functions:
- open_store()   -> open .db, return conn (autocommit, Row factory)
- run_sql()      -> execute SQL, return list[dict]
- savepoint()    -> all-or-nothing block, nests inside explicit transactions
- step()         -> run a best-effort step, return StepResult instead of raising
"""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from schemata.errors import StorageError

logger = logging.getLogger(__name__)

# Everything lives under ~/.schemata/ unless overridden
SCHEMATA_HOME = Path(os.environ.get("SCHEMATA_HOME", Path.home() / ".schemata"))
DEFAULT_DB = Path(os.environ.get("SCHEMATA_DB", SCHEMATA_HOME / "store.db"))
TABLE_PREFIX = os.environ.get("SCHEMATA_TABLE_PREFIX", "records_")
FOREIGN_KEYS = os.environ.get("SCHEMATA_FOREIGN_KEYS", "1").lower() not in ("0", "false", "off", "no")

MEMORY = ":memory:"


def open_store(db_path: str, foreign_keys: bool = True) -> sqlite3.Connection:
    """Open a store database with the settings every connection shares.

    isolation_level=None puts the driver in autocommit mode; transactions are
    issued explicitly (BEGIN / SAVEPOINT) by the store.
    """
    if db_path != MEMORY:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = sqlite3.connect(db_path, check_same_thread=False, timeout=10,
                         isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA synchronous=NORMAL")
    db.execute("PRAGMA temp_store=MEMORY")
    if db_path != MEMORY:
        db.execute("PRAGMA journal_mode=WAL")
    db.execute(f"PRAGMA foreign_keys={'ON' if foreign_keys else 'OFF'}")
    return db


def run_sql(db: sqlite3.Connection, query: str,
            params: tuple | list | dict = ()) -> list[dict]:
    """Execute SQL, return list of dicts."""
    try:
        rows = db.execute(query, params).fetchall()
    except sqlite3.Error as e:
        raise StorageError(f"{e} [sql: {query.strip()[:200]}]") from e
    return [dict(r) for r in rows]


def execute(db: sqlite3.Connection, query: str,
            params: tuple | list | dict = ()) -> sqlite3.Cursor:
    """Execute one statement, wrapping engine failures in StorageError."""
    try:
        return db.execute(query, params)
    except sqlite3.Error as e:
        raise StorageError(f"{e} [sql: {query.strip()[:200]}]") from e


@contextmanager
def savepoint(db: sqlite3.Connection, name: str = "schemata"):
    """All-or-nothing block.

    Works in autocommit mode (acts as BEGIN/COMMIT) and inside an explicit
    transaction (nested, rolled back on its own). The original exception is
    re-raised after the rollback.
    """
    sp = f"sp_{name}_{uuid.uuid4().hex[:8]}"
    db.execute(f"SAVEPOINT {sp}")
    try:
        yield db
    except BaseException:
        if db.in_transaction:
            db.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            db.execute(f"RELEASE SAVEPOINT {sp}")
        raise
    else:
        db.execute(f"RELEASE SAVEPOINT {sp}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


# ═══════════════════════════════════════════════════════════════════════════════
# BEST-EFFORT STEPS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class StepResult:
    """Outcome of a non-critical step (audit row, post-migration check)."""
    name: str
    success: bool
    error: Optional[str] = None
    detail: Optional[str] = None


def step(name: str, fn: Callable[[], Optional[str]]) -> StepResult:
    """Run `fn`; a sqlite or value failure becomes a failed StepResult.

    The failure is logged at WARNING here so it is never lost even when the
    caller ignores the result.
    """
    try:
        detail = fn()
        return StepResult(name=name, success=True, detail=detail)
    except (sqlite3.Error, StorageError, ValueError) as e:
        logger.warning("step %s failed: %s", name, e)
        return StepResult(name=name, success=False, error=str(e))
