"""
Schemata Schema Synthesizer — model definitions to physical tables.

Rules:
- Table name is <prefix><model>, default prefix records_
- Auto-increment Number `id` -> id INTEGER PRIMARY KEY AUTOINCREMENT
- Explicit primary-key fields -> table-level PRIMARY KEY(...), id TEXT NOT NULL UNIQUE
- Otherwise id TEXT PRIMARY KEY (assigned by caller or generated)
- Hybrid storage (a `data` document column) iff no declared fields or persistRawJson
- Relation fields -> FOREIGN KEY(col) REFERENCES "<prefix><target>"(id)
- Existing columns are never altered; new ones are added with ALTER TABLE

Column lookup is always fresh (PRAGMA table_info). Only table existence is
cached, in a TableCache the synthesizer owns.
"""

import json
import logging
import sqlite3
from datetime import date, datetime
from typing import Optional

from schemata.core import TABLE_PREFIX, execute
from schemata.errors import ValidationError
from schemata.sanitize import (
    json_path, quote, validate_field_name, validate_model_name, validate_table_prefix,
)
from schemata.types import FieldDefinition, FieldKind, ModelDefinition

logger = logging.getLogger(__name__)

HYBRID = 'hybrid'
TYPED = 'typed'

# Columns written by the store itself, never by field definitions
SYSTEM_COLUMNS = ('id', 'data', 'created_at', 'updated_at')


class TableCache:
    """Known-existing tables for one synthesizer.

    Dropped wholesale on rollback; single tables are discarded on every
    create, alter, rename, rebuild or drop that touches them.
    """

    def __init__(self):
        self._tables: set[str] = set()

    def __contains__(self, table: str) -> bool:
        return table in self._tables

    def __len__(self):
        return len(self._tables)

    def add(self, table: str):
        self._tables.add(table)

    def discard(self, table: str):
        self._tables.discard(table)

    def clear(self):
        self._tables.clear()


def sql_literal(field: FieldDefinition, value) -> str:
    """SQL literal for a column DEFAULT."""
    if field.type is FieldKind.BOOLEAN:
        return '1' if field.to_sql(value) else '0'
    if field.type is FieldKind.NUMBER:
        return repr(field.to_sql(value))
    if field.type is FieldKind.JSON and not isinstance(value, str):
        value = json.dumps(value)
    elif isinstance(value, (datetime, date)):
        value = value.isoformat()
    text = str(value).replace("'", "''")
    return f"'{text}'"


def coerce_value(model: ModelDefinition, field: FieldDefinition, value):
    """Caller value -> stored value. Selection values must be in the allowed
    set when one is recorded for the field."""
    if value is not None and field.type is FieldKind.SELECTION:
        allowed = model.enum_values(field.name)
        if allowed and value not in allowed:
            raise ValidationError(
                f"{model.name}.{field.name}: {value!r} not in {sorted(map(str, allowed))}")
    return field.to_sql(value)


class SchemaSynthesizer:
    """Turns registered definitions into CREATE/ALTER statements."""

    def __init__(self, prefix: str = None):
        self.prefix = validate_table_prefix(TABLE_PREFIX if prefix is None else prefix)
        self.cache = TableCache()

    # ── names & introspection ────────────────────────────────────────────────

    def table_name(self, model: str) -> str:
        return f"{self.prefix}{validate_model_name(model)}"

    def columns(self, db: sqlite3.Connection, table: str) -> dict[str, str]:
        """{lowercased name: actual name} from a fresh PRAGMA table_info."""
        rows = execute(db, f"PRAGMA table_info({quote(table)})").fetchall()
        return {r['name'].lower(): r['name'] for r in rows}

    def table_exists(self, db: sqlite3.Connection, model: str) -> bool:
        table = self.table_name(model)
        if table in self.cache:
            return True
        row = execute(db,
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        if row:
            self.cache.add(table)
        return row is not None

    def invalidate(self, model: str = None):
        if model is None:
            self.cache.clear()
        else:
            self.cache.discard(self.table_name(model))

    @staticmethod
    def storage_mode(definition: Optional[ModelDefinition]) -> str:
        if definition is None or not definition.fields:
            return HYBRID
        return HYBRID if definition.flag('persistRawJson') else TYPED

    def is_hybrid(self, definition: Optional[ModelDefinition]) -> bool:
        return self.storage_mode(definition) == HYBRID

    # ── DDL pieces ───────────────────────────────────────────────────────────

    def column_ddl(self, field: FieldDefinition, alter: bool = False) -> str:
        """Column definition for one declared field.

        With alter=True the clause is meant for ALTER TABLE ADD COLUMN: the
        relation is inlined as REFERENCES, and NOT NULL is dropped when there
        is no default because existing rows would have nothing to hold.
        """
        col = quote(validate_field_name(field.name))
        parts = [col, field.type.sql_type]
        if field.required:
            if alter and field.default is None:
                logger.warning("column %s added as nullable: required without a default", field.name)
            else:
                parts.append('NOT NULL')
        if field.default is not None:
            parts.append(f"DEFAULT {sql_literal(field, field.default)}")
        if field.length is not None and field.type.supports_length:
            parts.append(f"CHECK(LENGTH({col}) <= {int(field.length)})")
        if alter and field.relation is not None:
            parts.append(self._references(field))
        return ' '.join(parts)

    def _references(self, field: FieldDefinition) -> str:
        rel = field.relation
        clause = f'REFERENCES {quote(self.table_name(rel.model))}("id")'
        if rel.on_delete:
            clause += f" ON DELETE {rel.on_delete}"
        if rel.on_update:
            clause += f" ON UPDATE {rel.on_update}"
        return clause

    def _id_clause(self, definition: Optional[ModelDefinition]) -> tuple[str, Optional[str]]:
        """(id column DDL, table-level PRIMARY KEY constraint or None)."""
        if definition is None:
            return '"id" TEXT PRIMARY KEY', None
        id_field = definition.get_field('id')
        if id_field and id_field.auto_increment and id_field.type is FieldKind.NUMBER:
            return '"id" INTEGER PRIMARY KEY AUTOINCREMENT', None
        pk = definition.primary_key_fields
        if pk and not (len(pk) == 1 and pk[0].name.lower() == 'id'):
            cols = ', '.join(quote(f.name) for f in pk)
            return '"id" TEXT NOT NULL UNIQUE', f"PRIMARY KEY ({cols})"
        return '"id" TEXT PRIMARY KEY', None

    def table_ddl(self, table: str, definition: Optional[ModelDefinition],
                  hybrid: bool) -> str:
        """CREATE TABLE statement for `definition` under the name `table`."""
        id_col, pk_constraint = self._id_clause(definition)
        lines = [id_col]
        fks = []
        for f in (definition.fields if definition else []):
            if f.name.lower() == 'id':
                continue  # carried by the id column
            lines.append(self.column_ddl(f))
            if f.relation is not None:
                fks.append(f"FOREIGN KEY ({quote(f.name)}) {self._references(f)}")
        if hybrid:
            lines.append('"data" TEXT')
        lines.append('"created_at" TEXT')
        lines.append('"updated_at" TEXT')
        if pk_constraint:
            lines.append(pk_constraint)
        lines.extend(fks)
        body = ',\n    '.join(lines)
        return f"CREATE TABLE IF NOT EXISTS {quote(table)} (\n    {body}\n)"

    # ── mutations ────────────────────────────────────────────────────────────

    def ensure_table(self, db: sqlite3.Connection, model: str,
                     definition: Optional[ModelDefinition] = None) -> str:
        """Create the model table if missing. Idempotent.

        Returns 'created', 'exists', or 'rebuilt' (the table still carried a
        `data` column while the definition is now typed-only).
        """
        table = self.table_name(model)
        hybrid = self.is_hybrid(definition)
        if self.table_exists(db, model):
            if not hybrid and 'data' in self.columns(db, table):
                from schemata.migrations import rebuild_typed
                rebuild_typed(db, self, model, definition)
                return 'rebuilt'
            return 'exists'

        execute(db, self.table_ddl(table, definition, hybrid))
        self.cache.add(table)
        logger.info("created table %s (%s)", table, self.storage_mode(definition))
        return 'created'

    def ensure_column(self, db: sqlite3.Connection, model: str,
                      field: FieldDefinition) -> bool:
        """Add one column if it is missing. Returns True when added."""
        field.validate()
        if field.name.lower() == 'id':
            return False
        table = self.table_name(model)
        if field.name.lower() in self.columns(db, table):
            return False
        execute(db, f"ALTER TABLE {quote(table)} ADD COLUMN {self.column_ddl(field, alter=True)}")
        self.cache.discard(table)
        logger.info("added column %s.%s %s", table, field.name, field.type.sql_type)
        return True

    def index_name(self, model: str, field: str) -> str:
        return f"idx_{self.table_name(model)}_{validate_field_name(field)}"

    def create_index(self, db: sqlite3.Connection, model: str, field: str) -> str:
        """Index the column if present, else the document path. Returns the name."""
        table = self.table_name(model)
        cols = self.columns(db, table)
        if not cols:
            raise ValidationError(f"Cannot index {model}.{field}: table {table} does not exist")
        if field.lower() in cols:
            expr = quote(cols[field.lower()])
        elif 'data' in cols:
            expr = f'json_extract("data", {json_path(field)})'
        else:
            raise ValidationError(f"Cannot index {model}.{field}: unknown field")
        name = self.index_name(model, field)
        execute(db, f"CREATE INDEX IF NOT EXISTS {quote(name)} ON {quote(table)} ({expr})")
        logger.info("created index %s", name)
        return name

    def drop_table(self, db: sqlite3.Connection, model: str):
        table = self.table_name(model)
        execute(db, f"DROP TABLE IF EXISTS {quote(table)}")
        self.cache.discard(table)
        logger.info("dropped table %s", table)
