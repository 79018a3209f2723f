"""
Schemata Store — the public surface.

One Store per database file. Every call in auto-commit mode opens, uses and
closes its own connection; `:memory:` stores pin a single connection for
their lifetime. begin()/commit()/rollback() (or the transaction() context
manager) route every call through one connection until the transaction ends.

Every multi-statement operation runs inside a savepoint, so it is atomic in
both modes. Engine failures surface as StorageError.

Usage:
    store = Store("app.db")
    store.register_model({"name": "User", "fields": [
        {"name": "name", "type": "String", "required": True},
        {"name": "age", "type": "Number"},
    ]})
    rec = store.create_record("User", {"name": "Ada", "age": 36})
    store.get_records("User", QueryRequest(where=[Filter("age", "gte", 30)]))
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from schemata import impacts, migrations, registry
from schemata.core import (
    DEFAULT_DB, FOREIGN_KEYS, MEMORY, execute, now_iso, open_store, savepoint,
)
from schemata.errors import (
    ConflictError, NotFoundError, StorageError, UnsupportedOperationError, ValidationError,
)
from schemata.graph import drop_order
from schemata.mapper import to_group_record, to_record
from schemata.migrations import MigrationReport
from schemata.query import CompiledQuery, Condition, QueryTranslator
from schemata.sanitize import quote, validate_model_name
from schemata.schema import SchemaSynthesizer, coerce_value
from schemata.types import (
    Combinator, DynamicRecord, FieldKind, Filter, FilterOp, ModelDefinition, QueryRequest,
)

logger = logging.getLogger(__name__)


def _as_definition(definition) -> ModelDefinition:
    if isinstance(definition, ModelDefinition):
        return definition
    if isinstance(definition, dict):
        return ModelDefinition.from_dict(definition)
    raise ValidationError(f"Expected a model definition, got {type(definition).__name__}")


def _document_value(fd, value, stored):
    """What a declared field looks like inside the `data` document."""
    if stored is None:
        return None
    if fd.type is FieldKind.BOOLEAN:
        return bool(stored)
    if fd.type is FieldKind.NUMBER:
        return stored
    if fd.type is FieldKind.JSON and not isinstance(value, str):
        return value
    if fd.type is FieldKind.JSON and _is_json(stored):
        return json.loads(stored)
    return stored


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


class Store:
    """Runtime-defined models on per-model SQLite tables."""

    def __init__(self, db_path: str | Path = None, table_prefix: str = None,
                 foreign_keys: bool = None):
        self.db_path = str(db_path) if db_path is not None else str(DEFAULT_DB)
        self.foreign_keys = FOREIGN_KEYS if foreign_keys is None else bool(foreign_keys)
        self.schema = SchemaSynthesizer(table_prefix)
        self.translator = QueryTranslator(self.schema)
        self._pinned: Optional[sqlite3.Connection] = None
        self._tx: Optional[sqlite3.Connection] = None
        self._ready = False
        if self.db_path == MEMORY:
            self._pinned = open_store(MEMORY, self.foreign_keys)

    def __repr__(self):
        return f"Store({self.db_path!r}, prefix={self.schema.prefix!r})"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._tx is not None:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        self.close()

    def close(self):
        if self._pinned is not None:
            self._pinned.close()
            self._pinned = None

    # ═══════════════════════════════════════════════════════════════════════
    # CONNECTIONS
    # ═══════════════════════════════════════════════════════════════════════

    def _open(self) -> sqlite3.Connection:
        if self._pinned is not None:
            return self._pinned
        if self.db_path == MEMORY:
            raise StorageError("In-memory store is closed")
        return open_store(self.db_path, self.foreign_keys)

    def _prepare(self, db: sqlite3.Connection):
        if not self._ready:
            registry.ensure_catalog(db)
            self._ready = True

    @contextmanager
    def _conn(self):
        """The connection for one public call, with engine errors wrapped."""
        if self._tx is not None:
            db, owned = self._tx, False
        else:
            db = self._open()
            owned = db is not self._pinned
        try:
            self._prepare(db)
            yield db
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            if owned:
                db.close()

    @contextmanager
    def _write(self, name: str = 'write', schema_change: bool = False):
        """_conn plus a savepoint. A failure rolls the call back and forgets
        cached table existence, which may no longer hold.

        Schema changes outside an explicit transaction run with foreign keys
        off, so a table rebuild never fires ON DELETE actions.
        """
        with self._conn() as db:
            suspend = schema_change and self._tx is None and self.foreign_keys
            if suspend:
                db.execute("PRAGMA foreign_keys=OFF")
            try:
                with savepoint(db, name):
                    yield db
            except BaseException:
                self.schema.invalidate()
                raise
            finally:
                if suspend:
                    db.execute("PRAGMA foreign_keys=ON")

    def init(self) -> 'Store':
        """Create the catalog tables. Idempotent; also done lazily."""
        self._ready = False
        with self._conn():
            pass
        logger.info("store ready at %s", self.db_path)
        return self

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    def begin(self):
        if self._tx is not None:
            raise ConflictError("A transaction is already open on this store")
        db = self._open()
        try:
            self._prepare(db)
            db.execute("BEGIN")
        except sqlite3.Error as e:
            if db is not self._pinned:
                db.close()
            raise StorageError(str(e)) from e
        self._tx = db
        logger.debug("transaction started")

    def commit(self):
        """Commit the open transaction. No-op without one."""
        if self._tx is None:
            return
        db, self._tx = self._tx, None
        try:
            db.execute("COMMIT")
        except sqlite3.Error as e:
            if db.in_transaction:
                db.execute("ROLLBACK")
            self.schema.invalidate()
            raise StorageError(str(e)) from e
        finally:
            if db is not self._pinned:
                db.close()
        logger.debug("transaction committed")

    def rollback(self):
        """Roll back the open transaction. No-op without one."""
        if self._tx is None:
            return
        db, self._tx = self._tx, None
        self.schema.invalidate()
        try:
            if db.in_transaction:
                db.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            if db is not self._pinned:
                db.close()
        logger.debug("transaction rolled back")

    @contextmanager
    def transaction(self):
        """begin(); commit on success, rollback on any exception."""
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    # ═══════════════════════════════════════════════════════════════════════
    # MODELS
    # ═══════════════════════════════════════════════════════════════════════

    def register_model(self, definition, renames: dict = None) -> MigrationReport:
        """Upsert a definition and evolve its table. See migrations.migrate."""
        definition = _as_definition(definition)
        with self._write('register', schema_change=True) as db:
            return migrations.migrate(db, self.schema, definition, renames)

    def get_model(self, name: str) -> Optional[ModelDefinition]:
        with self._conn() as db:
            return registry.get(db, name)

    def get_managed_schema(self, name: str) -> Optional[dict]:
        with self._conn() as db:
            return registry.managed_schema(db, name)

    def model_exists(self, name: str) -> bool:
        with self._conn() as db:
            return registry.exists(db, name)

    def list_models(self) -> list[str]:
        with self._conn() as db:
            return registry.list_models(db)

    def list_definitions(self) -> list[ModelDefinition]:
        with self._conn() as db:
            return registry.list_definitions(db)

    def columns(self, model: str) -> dict[str, str]:
        """{lowercased: actual} column names of the model table ({} if none)."""
        with self._conn() as db:
            return self.schema.columns(db, self.schema.table_name(model))

    def history(self, model: str = None) -> list[dict]:
        with self._conn() as db:
            return registry.history(db, model)

    def translate(self, model: str, request: QueryRequest = None) -> CompiledQuery:
        with self._conn() as db:
            return self.translator.translate(db, model, request)

    # ═══════════════════════════════════════════════════════════════════════
    # IMPACTS
    # ═══════════════════════════════════════════════════════════════════════

    def apply_impact(self, impact: dict) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.apply_impact(db, self.schema, impact)

    def create_model_table(self, model: str) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.create_model_table(db, self.schema, model)

    def add_field(self, model: str, field) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.add_field(db, self.schema, model, field)

    def add_relation(self, model: str, field) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.add_relation(db, self.schema, model, field)

    def add_index(self, model: str, field: str) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.add_index(db, self.schema, model, field)

    def extend_enum(self, model: str, field: str, values: list) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.extend_enum(db, self.schema, model, field, values)

    def rename_field(self, model: str, old: str, new: str) -> MigrationReport:
        with self._write('impact', schema_change=True) as db:
            return impacts.rename_field(db, self.schema, model, old, new)

    # ═══════════════════════════════════════════════════════════════════════
    # RECORDS
    # ═══════════════════════════════════════════════════════════════════════

    def _target(self, db, model: str) -> Optional[ModelDefinition]:
        """Definition for a write, with its table in place."""
        validate_model_name(model)
        definition = registry.get(db, model)
        if definition is not None and not definition.flag('persistAsTable', True) \
                and not self.schema.table_exists(db, model):
            raise UnsupportedOperationError(f"Model '{model}' is not persisted as a table")
        self.schema.ensure_table(db, model, definition)
        return definition

    def _row(self, db, model: str, definition: Optional[ModelDefinition],
             data: dict, check_required: bool = True) -> dict:
        """Caller data -> {column: stored value}, `data` document included."""
        table = self.schema.table_name(model)
        cols = self.schema.columns(db, table)
        row, doc = {}, {}
        for key, value in data.items():
            if key.lower() in ('id', 'created_at', 'updated_at', 'data'):
                continue
            fd = definition.get_field(key) if definition else None
            if fd is not None:
                stored = coerce_value(definition, fd, value)
                if fd.name.lower() in cols:
                    row[cols[fd.name.lower()]] = stored
                doc[fd.name] = _document_value(fd, value, stored)
            elif 'data' in cols:
                doc[key] = value
            elif key.lower() in cols:
                row[cols[key.lower()]] = value
            else:
                logger.debug("%s: ignoring undeclared key %r", model, key)
        if check_required and definition is not None:
            for fd in definition.fields:
                if fd.name.lower() == 'id' or fd.auto_increment:
                    continue
                if fd.required and fd.default is None and doc.get(fd.name) is None:
                    raise ValidationError(f"{model}.{fd.name} is required")
        if 'data' in cols:
            row['data'] = json.dumps(doc, default=str)
        return row

    def _assign_id(self, db, model: str, definition: Optional[ModelDefinition],
                   data: dict, record_id) -> tuple:
        """(id to store, data with auto-increment fields filled)."""
        if definition is not None and definition.has_auto_increment:
            n = registry.next_counter(db, model)
            data = dict(data)
            for f in definition.fields:
                if f.auto_increment and f.name.lower() != 'id':
                    data[f.name] = n
            id_field = definition.get_field('id')
            if id_field is not None and id_field.auto_increment:
                return n, data
            return str(n), data
        explicit = record_id if record_id is not None else data.get('id')
        if explicit is not None and explicit != '':
            return str(explicit), data
        return uuid.uuid4().hex, data

    def _fetch(self, db, model: str, record_id) -> Optional[DynamicRecord]:
        compiled = self.translator.translate(db, model, QueryRequest(
            where=[Filter('id', FilterOp.EQ, str(record_id))], limit=1))
        row = execute(db, compiled.sql, compiled.params).fetchone()
        return to_record(row, compiled.kinds) if row else None

    def _create(self, db, model: str, data: dict, id=None) -> DynamicRecord:
        definition = self._target(db, model)
        record_id, data = self._assign_id(db, model, definition, data, id)
        row = self._row(db, model, definition, data)
        now = now_iso()
        row.update({'id': record_id, 'created_at': now, 'updated_at': now})
        names = list(row)
        execute(db,
            f"INSERT INTO {quote(self.schema.table_name(model))} "
            f"({', '.join(quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})",
            [row[n] for n in names])
        return self._fetch(db, model, record_id)

    def _update(self, db, model: str, id, data: dict) -> DynamicRecord:
        definition = self._target(db, model)
        table = self.schema.table_name(model)
        row = self._row(db, model, definition, data)
        kept = {f.name.lower() for f in (definition.fields if definition else [])
                if f.auto_increment and f.name not in data}
        cols = self.schema.columns(db, table)
        assignments = {}
        for key, actual in cols.items():
            if key in ('id', 'created_at') or key in kept:
                continue
            assignments[actual] = row.get(actual)
        assignments[cols['updated_at']] = now_iso()
        names = list(assignments)
        cur = execute(db,
            f"UPDATE {quote(table)} SET {', '.join(f'{quote(n)} = ?' for n in names)} "
            f"WHERE \"id\" = ?",
            [assignments[n] for n in names] + [str(id)])
        if cur.rowcount == 0:
            raise NotFoundError(f"{model} record '{id}' not found")
        return self._fetch(db, model, id)

    def create_record(self, model: str, data: dict, id=None) -> DynamicRecord:
        """Insert one record. Id: counter for auto-increment models, else
        `id` / data["id"], else a generated uuid."""
        if not isinstance(data, dict):
            raise ValidationError("Record data must be an object")
        with self._write('create') as db:
            return self._create(db, model, data, id)

    def get_record(self, id, model: str = None) -> Optional[DynamicRecord]:
        """One record by id. Without a model, every registered model is searched."""
        with self._conn() as db:
            models = [validate_model_name(model)] if model else registry.list_models(db)
            for m in models:
                if self.schema.table_exists(db, m):
                    record = self._fetch(db, m, id)
                    if record is not None:
                        return record
            return None

    def get_records(self, model: str, request: QueryRequest = None) -> list[DynamicRecord]:
        with self._conn() as db:
            if not self.schema.table_exists(db, model):
                if registry.exists(db, model):
                    return []
                raise NotFoundError(f"Model '{model}' does not exist")
            compiled = self.translator.translate(db, model, request)
            rows = execute(db, compiled.sql, compiled.params).fetchall()
        if compiled.grouped:
            return [to_group_record(r, compiled.group_by, compiled.kinds) for r in rows]
        return [to_record(r, compiled.kinds, compiled.labels) for r in rows]

    def count_records(self, model: str, request: QueryRequest = None) -> int:
        with self._conn() as db:
            if not self.schema.table_exists(db, model):
                if registry.exists(db, model):
                    return 0
                raise NotFoundError(f"Model '{model}' does not exist")
            compiled = self.translator.translate(db, model, request, count=True)
            return execute(db, compiled.sql, compiled.params).fetchone()[0]

    def update_record(self, model: str, id, data: dict) -> DynamicRecord:
        """Replace the record's field map. created_at is kept; auto-increment
        fields are kept unless given."""
        if not isinstance(data, dict):
            raise ValidationError("Record data must be an object")
        with self._write('update') as db:
            return self._update(db, model, id, data)

    def upsert_record(self, model: str, data: dict, id=None) -> DynamicRecord:
        """Update when a record with the given (or data) id exists, else create."""
        if not isinstance(data, dict):
            raise ValidationError("Record data must be an object")
        record_id = id if id is not None else data.get('id')
        with self._write('upsert') as db:
            if record_id is not None and self.schema.table_exists(db, model) \
                    and self._fetch(db, model, record_id) is not None:
                return self._update(db, model, record_id, data)
            return self._create(db, model, data, id=record_id)

    def delete_record(self, model: str, id) -> bool:
        with self._write('delete') as db:
            if not self.schema.table_exists(db, model):
                return False
            cur = execute(db,
                f"DELETE FROM {quote(self.schema.table_name(model))} WHERE \"id\" = ?",
                (str(id),))
            return cur.rowcount > 0

    def delete_records(self, model: str, filters: list = None,
                       combinator: Combinator = Combinator.AND) -> int:
        """Delete every record matching `filters` (all records when empty)."""
        with self._write('delete') as db:
            if not self.schema.table_exists(db, model):
                return 0
            table = quote(self.schema.table_name(model))
            cond: Condition = self.translator.where_clause(db, model, filters or [], combinator)
            cur = execute(db,
                f'DELETE FROM {table} WHERE "id" IN '
                f'(SELECT "a"."id" FROM {table} "a" WHERE {cond.sql})',
                cond.params)
            logger.info("deleted %d %s records", cur.rowcount, model)
            return cur.rowcount

    # ═══════════════════════════════════════════════════════════════════════
    # DROP
    # ═══════════════════════════════════════════════════════════════════════

    def _drop(self, db, model: str) -> bool:
        existed = self.schema.table_exists(db, model) or registry.exists(db, model)
        self.schema.drop_table(db, model)
        registry.purge(db, model)
        registry.log_change(db, model, {
            'action': 'drop', 'table': self.schema.table_name(model),
        }, 'drop')
        return existed

    def drop_model_table(self, model: str) -> bool:
        """Drop the table and purge catalog and counter rows. History stays."""
        validate_model_name(model)
        with self._write('drop', schema_change=True) as db:
            return self._drop(db, model)

    def drop_all_model_tables(self) -> list[str]:
        """Drop every registered model, dependents before their targets."""
        with self._write('drop_all', schema_change=True) as db:
            order = drop_order(registry.list_definitions(db))
            for model in order:
                self._drop(db, model)
        logger.info("dropped %d models", len(order))
        return order
