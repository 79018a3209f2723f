"""
Schemata Model Registry — the catalog of model definitions.

Single source of truth for field metadata. Everything else reads it; the
schema synthesizer only materializes what is stored here.

Catalog tables (names are part of the on-disk contract):
    schema_manager   one row per model, fields serialized into metadata JSON
    schema_history   append-only change log
    schema_counters  per-model auto-increment counters
"""

import json
import logging
import sqlite3
from typing import Optional

from schemata.core import StepResult, execute, now_iso, run_sql, step
from schemata.errors import ValidationError
from schemata.sanitize import validate_model_name
from schemata.types import FieldDefinition, ModelDefinition

logger = logging.getLogger(__name__)

_CATALOG = [
    """CREATE TABLE IF NOT EXISTS schema_manager (
        model_name  TEXT PRIMARY KEY,
        module      TEXT,
        metadata    TEXT,
        applied_at  TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS schema_history (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        model_name  TEXT,
        change      TEXT,
        module      TEXT,
        operation   TEXT,
        applied_at  TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS schema_counters (
        model_name  TEXT PRIMARY KEY,
        counter     INTEGER
    )""",
]


def ensure_catalog(db: sqlite3.Connection):
    """Create the catalog tables if they don't exist. Idempotent."""
    for ddl in _CATALOG:
        execute(db, ddl)


# ═══════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════════

def register(db: sqlite3.Connection, model: ModelDefinition):
    """Upsert the catalog row for `model`.

    Fields are serialized into metadata["fields"]. If any field is
    auto-increment, a zero counter row is created (kept if present).
    """
    model.validate()
    metadata = {k: v for k, v in model.metadata.items() if k != 'fields'}
    if model.fields:
        metadata['fields'] = [f.to_dict() for f in model.fields]
    execute(db, """
        INSERT INTO schema_manager (model_name, module, metadata, applied_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(model_name) DO UPDATE SET
            module = excluded.module,
            metadata = excluded.metadata,
            applied_at = excluded.applied_at
    """, (model.name, model.module or '', json.dumps(metadata), now_iso()))
    logger.info("registered model %s (%d fields)", model.name, len(model.fields))

    if model.has_auto_increment:
        ensure_counter(db, model.name)


def _parse_metadata(name: str, text: Optional[str]) -> dict:
    if not text:
        return {}
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("model %s: unreadable catalog metadata (%s), treating as empty", name, e)
        return {}
    if not isinstance(obj, dict):
        logger.warning("model %s: catalog metadata is not an object, treating as empty", name)
        return {}
    return obj


def _definition_from_row(name: str, module: Optional[str], metadata_text: Optional[str]) -> ModelDefinition:
    metadata = _parse_metadata(name, metadata_text)
    raw_fields = metadata.pop('fields', None) or []
    fields = []
    for raw in raw_fields:
        try:
            fields.append(FieldDefinition.from_dict(raw))
        except ValidationError as e:
            logger.warning("model %s: skipping unreadable field %r (%s)", name, raw, e)
    return ModelDefinition(name=name, fields=fields, module=module or '', metadata=metadata)


def get(db: sqlite3.Connection, name: str) -> Optional[ModelDefinition]:
    """Return the stored definition, or None if the model is not registered."""
    validate_model_name(name)
    row = execute(db,
        "SELECT module, metadata FROM schema_manager WHERE model_name = ?", (name,)
    ).fetchone()
    if row is None:
        return None
    return _definition_from_row(name, row['module'], row['metadata'])


def exists(db: sqlite3.Connection, name: str) -> bool:
    validate_model_name(name)
    row = execute(db,
        "SELECT 1 FROM schema_manager WHERE model_name = ?", (name,)
    ).fetchone()
    return row is not None


def managed_schema(db: sqlite3.Connection, name: str) -> Optional[dict]:
    """Raw catalog row: module, metadata (parsed, fields included), applied_at."""
    validate_model_name(name)
    row = execute(db,
        "SELECT model_name, module, metadata, applied_at FROM schema_manager "
        "WHERE model_name = ?", (name,)
    ).fetchone()
    if row is None:
        return None
    return {
        'model_name': row['model_name'],
        'module': row['module'] or '',
        'metadata': _parse_metadata(name, row['metadata']),
        'applied_at': row['applied_at'],
    }


def list_models(db: sqlite3.Connection) -> list[str]:
    rows = execute(db, "SELECT model_name FROM schema_manager ORDER BY model_name").fetchall()
    return [r[0] for r in rows]


def list_definitions(db: sqlite3.Connection) -> list[ModelDefinition]:
    rows = execute(db,
        "SELECT model_name, module, metadata FROM schema_manager ORDER BY model_name"
    ).fetchall()
    return [_definition_from_row(r['model_name'], r['module'], r['metadata']) for r in rows]


def purge(db: sqlite3.Connection, name: str):
    """Remove catalog and counter rows. History is kept."""
    validate_model_name(name)
    execute(db, "DELETE FROM schema_manager WHERE model_name = ?", (name,))
    execute(db, "DELETE FROM schema_counters WHERE model_name = ?", (name,))


# ═══════════════════════════════════════════════════════════════════════════════
# COUNTERS
# ═══════════════════════════════════════════════════════════════════════════════

def ensure_counter(db: sqlite3.Connection, name: str):
    execute(db,
        "INSERT OR IGNORE INTO schema_counters (model_name, counter) VALUES (?, 0)",
        (name,))


def next_counter(db: sqlite3.Connection, name: str) -> int:
    """Increment and return the model's counter in one statement."""
    ensure_counter(db, name)
    row = execute(db,
        "UPDATE schema_counters SET counter = counter + 1 "
        "WHERE model_name = ? RETURNING counter", (name,)
    ).fetchone()
    return int(row[0])


def current_counter(db: sqlite3.Connection, name: str) -> Optional[int]:
    row = execute(db,
        "SELECT counter FROM schema_counters WHERE model_name = ?", (name,)
    ).fetchone()
    return int(row[0]) if row else None


# ═══════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═══════════════════════════════════════════════════════════════════════════════

def log_change(db: sqlite3.Connection, name: str, change: dict | str,
               operation: str, module: str = '') -> StepResult:
    """Append a schema_history row. Best-effort: a failure comes back as a
    failed StepResult (and a WARNING log line), never as an exception."""
    text = change if isinstance(change, str) else json.dumps(change, default=str)

    def _insert():
        db.execute(
            "INSERT INTO schema_history (model_name, change, module, operation, applied_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (name, text, module or '', operation, now_iso()))

    return step(f"log_change:{operation}:{name}", _insert)


def history(db: sqlite3.Connection, name: str = None) -> list[dict]:
    """Change history, oldest first. `change` is decoded when it is JSON."""
    if name is not None:
        validate_model_name(name)
        rows = run_sql(db,
            "SELECT id, model_name, change, module, operation, applied_at "
            "FROM schema_history WHERE model_name = ? ORDER BY id", (name,))
    else:
        rows = run_sql(db,
            "SELECT id, model_name, change, module, operation, applied_at "
            "FROM schema_history ORDER BY id")
    for r in rows:
        try:
            r['change'] = json.loads(r['change']) if r['change'] else None
        except json.JSONDecodeError:
            pass  # plain-text change entries stay as written
    return rows
