"""
Schemata Migrations — additive evolution of model tables.

Three moves, nothing destructive:
- additive: missing declared fields become new columns
- rename:   a field that disappeared and an identical one that appeared are
            the same field under a new name (explicit renames win)
- rebuild:  a table that still carries the `data` document column is copied
            once into a typed-only table, inside a savepoint

Every move appends a schema_history row; the outcome of a migration is a
MigrationReport, never a silent success.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Optional

from schemata import registry
from schemata.core import StepResult, execute, savepoint, step
from schemata.errors import ConflictError, StorageError, ValidationError
from schemata.sanitize import IDENTIFIER_RE, json_path, quote, validate_field_name
from schemata.schema import SchemaSynthesizer, sql_literal
from schemata.types import FieldDefinition, FieldKind, ModelDefinition

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """What a register call or an impact did to the physical schema."""
    model: str
    created: bool = False
    added_columns: list = field(default_factory=list)
    renamed: dict = field(default_factory=dict)
    rebuilt: bool = False
    indexes: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    steps: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """False when any best-effort step failed."""
        return all(s.success for s in self.steps)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.added_columns or self.renamed
                    or self.rebuilt or self.indexes)

    def warn(self, message: str):
        logger.warning("%s: %s", self.model, message)
        self.warnings.append(message)

    def record(self, result: StepResult):
        self.steps.append(result)
        if not result.success:
            self.warnings.append(f"{result.name}: {result.error}")

    def to_dict(self) -> dict:
        d = asdict(self)
        d['ok'] = self.ok
        return d


# ═══════════════════════════════════════════════════════════════════════════════
# RENAMES
# ═══════════════════════════════════════════════════════════════════════════════

def detect_renames(old: Optional[ModelDefinition], new: ModelDefinition,
                   report: MigrationReport = None,
                   exclude: set = frozenset()) -> dict[str, str]:
    """Pair removed fields with added fields of the same signature.

    A pair is accepted only when the match is unique on both sides. Anything
    else is left additive; ambiguous matches are reported as warnings.
    Field names in `exclude` (lowercased) take no part.
    """
    if old is None:
        return {}
    old_names = {f.name.lower() for f in old.fields}
    new_names = {f.name.lower() for f in new.fields}
    removed = [f for f in old.fields
               if f.name.lower() not in new_names and f.name.lower() not in exclude]
    added = [f for f in new.fields
             if f.name.lower() not in old_names and f.name.lower() not in exclude]

    renames = {}
    for nf in added:
        candidates = [of for of in removed if of.signature() == nf.signature()]
        if not candidates:
            continue
        if len(candidates) > 1:
            if report is not None:
                names = ', '.join(sorted(c.name for c in candidates))
                report.warn(f"ambiguous rename for '{nf.name}' (candidates: {names}); "
                            f"treated as a new field")
            continue
        of = candidates[0]
        rivals = [f for f in added if f.signature() == of.signature()]
        if len(rivals) > 1:
            if report is not None:
                names = ', '.join(sorted(r.name for r in rivals))
                report.warn(f"ambiguous rename of '{of.name}' (candidates: {names}); "
                            f"treated as new fields")
            continue
        renames[of.name] = nf.name
    return renames


def resolve_renames(old: Optional[ModelDefinition], new: ModelDefinition,
                    explicit: dict = None, report: MigrationReport = None) -> dict[str, str]:
    """Explicit renames, validated, plus heuristic ones for the remaining fields."""
    explicit = dict(explicit or {})
    if explicit and old is None:
        raise ValidationError(f"Model '{new.name}' is new; nothing to rename")
    resolved = {}
    for old_name, new_name in explicit.items():
        validate_field_name(old_name)
        validate_field_name(new_name)
        of = old.get_field(old_name)
        nf = new.get_field(new_name)
        if of is None:
            raise ValidationError(f"Cannot rename '{old_name}': not a field of {new.name}")
        if nf is None:
            raise ValidationError(f"Cannot rename to '{new_name}': not in the new definition")
        resolved[of.name] = nf.name
    exclude = {n.lower() for n in resolved} | {n.lower() for n in resolved.values()}
    resolved.update(detect_renames(old, new, report, exclude=exclude))
    return resolved


def rename_column(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                  old: str, new: str) -> bool:
    """Rename a column (and the matching document key, in hybrid tables).

    Skips when the old column is missing or the new one already exists.
    Returns True when anything moved.
    """
    validate_field_name(old)
    validate_field_name(new)
    table = synth.table_name(model)
    cols = synth.columns(db, table)
    moved = False
    if old.lower() in cols and new.lower() not in cols:
        execute(db, f"ALTER TABLE {quote(table)} RENAME COLUMN "
                    f"{quote(cols[old.lower()])} TO {quote(new)}")
        moved = True
    if 'data' in cols:
        old_path, new_path = json_path(old), json_path(new)
        value = f'json_extract("data", {old_path})'
        cur = execute(db, f"""
            UPDATE {quote(table)} SET "data" = json_set(
                json_remove("data", {old_path}), {new_path},
                CASE json_type("data", {old_path})
                    WHEN 'object' THEN json({value})
                    WHEN 'array' THEN json({value})
                    WHEN 'true' THEN json('true')
                    WHEN 'false' THEN json('false')
                    ELSE {value}
                END)
            WHERE json_valid("data") AND json_type("data", {old_path}) IS NOT NULL
              AND json_type("data", {new_path}) IS NULL
        """)
        moved = moved or cur.rowcount > 0
    if moved:
        synth.cache.discard(table)
        logger.info("renamed %s.%s -> %s", table, old, new)
    return moved


# ═══════════════════════════════════════════════════════════════════════════════
# ADDITIVE
# ═══════════════════════════════════════════════════════════════════════════════

def ensure_columns(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                   definition: ModelDefinition) -> list[str]:
    """ensure_column for every declared field. Returns the names added."""
    added = []
    for f in definition.fields:
        if synth.ensure_column(db, model, f):
            backfill_column(db, synth, model, f)
            added.append(f.name)
    return added


def backfill_column(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                    f: FieldDefinition) -> int:
    """Fill a new column from the `data` document, where the table has one.

    Once a column exists, queries read the column only, so rows written
    before it existed must carry their value there too.
    """
    table = synth.table_name(model)
    cols = synth.columns(db, table)
    if 'data' not in cols or f.name.lower() not in cols:
        return 0
    col = quote(cols[f.name.lower()])
    cur = execute(db,
        f"UPDATE {quote(table)} SET {col} = {_copy_expr(f, {})} "
        f"WHERE {col} IS NULL AND json_valid(\"data\")")
    if cur.rowcount:
        logger.info("backfilled %s.%s from documents (%d rows)", table, f.name, cur.rowcount)
    return cur.rowcount


# ═══════════════════════════════════════════════════════════════════════════════
# REBUILD (document -> typed)
# ═══════════════════════════════════════════════════════════════════════════════

def _copy_expr(f: FieldDefinition, cols: dict[str, str]) -> str:
    """Source expression for one field: typed column first, document second."""
    doc = f'json_extract("data", {json_path(f.name)})'
    if f.name.lower() in cols:
        expr = f'COALESCE({quote(cols[f.name.lower()])}, {doc})'
    else:
        expr = doc
    if f.type is FieldKind.NUMBER:
        expr = f"CAST({expr} AS REAL)"
    elif f.type is FieldKind.BOOLEAN:
        text = f"LOWER(CAST({expr} AS TEXT))"
        expr = (f"CASE WHEN {expr} IS NULL THEN NULL "
                f"WHEN {text} IN ('true', '1') THEN 1 "
                f"WHEN {text} IN ('false', '0') THEN 0 "
                f"ELSE CAST({expr} AS INTEGER) END")
    if f.default is not None:
        expr = f"COALESCE({expr}, {sql_literal(f, f.default)})"
    return expr


def referencing_tables(db: sqlite3.Connection, table: str) -> list[str]:
    """Other tables whose foreign keys point at `table`."""
    names = [r[0] for r in execute(db,
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    ).fetchall()]
    found = []
    for name in names:
        if name == table or not IDENTIFIER_RE.match(name):
            continue
        fks = execute(db, f"PRAGMA foreign_key_list({quote(name)})").fetchall()
        if any(r['table'] == table for r in fks):
            found.append(name)
    return sorted(found)


def rebuild_typed(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                  definition: ModelDefinition) -> int:
    """Move a document-bearing table to typed-only storage. Returns rows copied.

    All-or-nothing: any failure leaves the original table (with `data`) in
    place and raises StorageError. Inside a transaction with foreign keys
    enforced, a table other tables reference is refused with ConflictError.
    """
    table = synth.table_name(model)
    tmp = f"{table}_tmp"
    cols = synth.columns(db, table)
    if 'data' not in cols:
        return 0

    fields = [f for f in definition.fields if f.name.lower() != 'id']
    targets = ['"id"'] + [quote(f.name) for f in fields]
    sources = ['"id"'] + [_copy_expr(f, cols) for f in fields]
    for ts in ('created_at', 'updated_at'):
        targets.append(quote(ts))
        sources.append(quote(cols[ts]) if ts in cols else 'NULL')

    # PRAGMA foreign_keys is a no-op inside a transaction, and DROP TABLE with
    # enforcement on deletes every row first, firing ON DELETE on children
    fk_on = db.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    toggle_fk = fk_on and not db.in_transaction
    if fk_on and db.in_transaction:
        children = referencing_tables(db, table)
        if children:
            raise ConflictError(
                f"cannot rebuild {table} inside a transaction with foreign keys enforced: "
                f"referenced by {', '.join(children)}; register it outside the transaction")
    if toggle_fk:
        db.execute("PRAGMA foreign_keys=OFF")
    try:
        with savepoint(db, 'rebuild'):
            execute(db, f"DROP TABLE IF EXISTS {quote(tmp)}")
            execute(db, synth.table_ddl(tmp, definition, hybrid=False))
            execute(db, f"INSERT INTO {quote(tmp)} ({', '.join(targets)}) "
                        f"SELECT {', '.join(sources)} FROM {quote(table)}")
            before = execute(db, f"SELECT COUNT(*) FROM {quote(table)}").fetchone()[0]
            after = execute(db, f"SELECT COUNT(*) FROM {quote(tmp)}").fetchone()[0]
            if before != after:
                raise StorageError(f"row count mismatch: {before} in {table}, {after} copied")
            execute(db, f"DROP TABLE {quote(table)}")
            execute(db, f"ALTER TABLE {quote(tmp)} RENAME TO {quote(table)}")
            synth.cache.discard(table)
            for name in definition.indexes:
                synth.create_index(db, model, name)
    except (StorageError, ValidationError, sqlite3.Error) as e:
        synth.cache.discard(table)
        raise StorageError(f"rebuild of {table} failed, document table kept: {e}") from e
    finally:
        if toggle_fk:
            db.execute("PRAGMA foreign_keys=ON")
    synth.cache.discard(tmp)
    logger.info("rebuilt %s as typed-only (%d rows)", table, after)
    return after


def foreign_key_check(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str) -> StepResult:
    """Post-rebuild diagnostic: rows whose relation values point nowhere."""
    table = synth.table_name(model)

    def _check():
        rows = db.execute(f"PRAGMA foreign_key_check({quote(table)})").fetchall()
        if rows:
            targets = sorted({r[2] for r in rows})
            raise ValueError(f"{len(rows)} rows in {table} reference missing rows in {targets}")
        return "ok"

    return step(f"foreign_key_check:{model}", _check)


# ═══════════════════════════════════════════════════════════════════════════════
# REGISTER FLOW
# ═══════════════════════════════════════════════════════════════════════════════

def migrate(db: sqlite3.Connection, synth: SchemaSynthesizer,
            definition: ModelDefinition, renames: dict = None) -> MigrationReport:
    """Record `definition` and bring its table up to date.

    Caller provides the savepoint; everything here is one unit.
    """
    definition.validate()
    name = definition.name
    report = MigrationReport(model=name)
    old = registry.get(db, name)
    resolved = resolve_renames(old, definition, renames, report)

    if old is not None:
        for nf in definition.fields:
            of = old.get_field(nf.name)
            if of is not None and of.type is not nf.type:
                report.warn(f"type change of '{nf.name}' ({of.type} -> {nf.type}) "
                            f"not applied to the existing column")

    registry.register(db, definition)
    report.record(registry.log_change(db, name, {
        'action': 'register',
        'fields': [f.to_dict() for f in definition.fields],
        'renames': resolved,
    }, 'register', definition.module))

    if not definition.flag('persistAsTable', True):
        return report

    if synth.table_exists(db, name):
        for old_name, new_name in resolved.items():
            if rename_column(db, synth, name, old_name, new_name):
                report.renamed[old_name] = new_name
                report.record(registry.log_change(db, name, {
                    'action': 'renameField', 'from': old_name, 'to': new_name,
                }, 'renameField', definition.module))

    status = synth.ensure_table(db, name, definition)
    if status == 'created':
        report.created = True
        report.record(registry.log_change(db, name, {
            'action': 'createTable', 'table': synth.table_name(name),
            'mode': synth.storage_mode(definition),
        }, 'createTable', definition.module))
    elif status == 'rebuilt':
        report.rebuilt = True
        report.record(registry.log_change(db, name, {
            'action': 'rebuild', 'table': synth.table_name(name),
        }, 'rebuild', definition.module))
        report.record(foreign_key_check(db, synth, name))
    else:
        for f in definition.fields:
            if f.required and f.default is None and f.name.lower() != 'id' \
                    and f.name.lower() not in synth.columns(db, synth.table_name(name)):
                report.warn(f"required field '{f.name}' added as nullable column (no default)")
        added = ensure_columns(db, synth, name, definition)
        if added:
            report.added_columns.extend(added)
            report.record(registry.log_change(db, name, {
                'action': 'addColumns', 'fields': added,
            }, 'addColumn', definition.module))

    if not report.rebuilt and definition.indexes:
        table = synth.table_name(name)
        existing = {r[0] for r in execute(db,
            "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name=?", (table,)
        ).fetchall()}
        for idx in definition.indexes:
            if synth.index_name(name, idx) not in existing:
                report.indexes.append(synth.create_index(db, name, idx))

    logger.info("migrated %s: created=%s added=%s renamed=%s rebuilt=%s",
                name, report.created, report.added_columns, report.renamed, report.rebuilt)
    return report
