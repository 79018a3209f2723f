"""
Schemata Impacts — named, parameterized schema changes.

An impact is a dict: {"action": <name>, "targetModel": <model>, ...params}.

    createModelTable  materialize the registered definition
    addField          {"field": {...}}            new declared field + column
    addRelation       {"field": {..., "relation": {...}}}
    addIndex          {"field": "name"}           column or document-path index
    extendEnum        {"field": "name", "values": [...]}
    renameField       {"from": "old", "to": "new"}

Each one updates the catalog, touches the table, and appends a
schema_history row, all inside the caller's savepoint. Each returns a
MigrationReport.
"""

import dataclasses
import logging
import sqlite3

from schemata import registry
from schemata.core import execute
from schemata.errors import NotFoundError, UnsupportedOperationError, ValidationError
from schemata.migrations import MigrationReport, backfill_column, rename_column
from schemata.sanitize import quote, validate_field_name
from schemata.schema import SchemaSynthesizer
from schemata.types import FieldDefinition, FieldKind, ModelDefinition

logger = logging.getLogger(__name__)


def _definition(db: sqlite3.Connection, model: str) -> ModelDefinition:
    definition = registry.get(db, model)
    if definition is None:
        raise NotFoundError(f"Model '{model}' is not registered")
    return definition


def _materialized(definition: ModelDefinition) -> bool:
    return definition.flag('persistAsTable', True)


def _save(db, definition: ModelDefinition, report: MigrationReport, change: dict, operation: str):
    registry.register(db, definition)
    report.record(registry.log_change(db, definition.name, change, operation, definition.module))


# ═══════════════════════════════════════════════════════════════════════════════
# IMPACTS
# ═══════════════════════════════════════════════════════════════════════════════

def create_model_table(db: sqlite3.Connection, synth: SchemaSynthesizer,
                       model: str) -> MigrationReport:
    definition = _definition(db, model)
    report = MigrationReport(model=model)
    status = synth.ensure_table(db, model, definition)
    report.created = status == 'created'
    report.rebuilt = status == 'rebuilt'
    if status != 'exists':
        report.record(registry.log_change(db, model, {
            'action': 'createModelTable', 'table': synth.table_name(model), 'status': status,
        }, 'createModelTable', definition.module))
    return report


def add_field(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
              field, operation: str = 'addField') -> MigrationReport:
    """Declare a new field and add its column.

    Re-declaring an existing field with the same type is a no-op; with a
    different type it is refused. So is a new primary key or auto-increment
    field on a table that already exists.
    """
    definition = _definition(db, model)
    fd = FieldDefinition.from_dict(field).validate()
    report = MigrationReport(model=model)

    existing = definition.get_field(fd.name)
    if existing is not None:
        if existing.type is not fd.type:
            raise UnsupportedOperationError(
                f"{model}.{fd.name} is {existing.type}; changing it to {fd.type} is not supported")
        if fd.relation is not None and existing.relation is None:
            raise UnsupportedOperationError(
                f"{model}.{fd.name} exists; a foreign key cannot be added to an existing column")
        report.warn(f"field '{fd.name}' already declared, nothing to do")
        return report

    table_exists = _materialized(definition) and synth.table_exists(db, model)
    if table_exists and (fd.primary_key or fd.auto_increment):
        raise UnsupportedOperationError(
            f"{model}.{fd.name}: primary key / auto-increment fields cannot be added "
            f"to an existing table")

    definition.fields.append(fd)
    definition.validate()
    _save(db, definition, report, {'action': operation, 'field': fd.to_dict()}, operation)

    if _materialized(definition):
        status = synth.ensure_table(db, model, definition)
        report.created = status == 'created'
        report.rebuilt = status == 'rebuilt'
        if status == 'exists' and synth.ensure_column(db, model, fd):
            backfill_column(db, synth, model, fd)
            report.added_columns.append(fd.name)
    return report


def add_relation(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                 field) -> MigrationReport:
    """addField for a field that must carry a relation to a registered model."""
    if isinstance(field, dict) and not any(k.lower() == 'type' for k in field):
        field = {**field, 'type': FieldKind.RELATION.label}
    fd = FieldDefinition.from_dict(field)
    if fd.relation is None:
        raise ValidationError(f"addRelation on {model}.{fd.name} needs a relation")
    if not registry.exists(db, fd.relation.model):
        raise NotFoundError(f"Relation target '{fd.relation.model}' is not registered")
    return add_field(db, synth, model, fd, operation='addRelation')


def add_index(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
              field: str) -> MigrationReport:
    """Index a field and remember it in metadata["indexes"] so a rebuild
    re-creates it."""
    definition = _definition(db, model)
    validate_field_name(field)
    report = MigrationReport(model=model)
    if not _materialized(definition):
        raise UnsupportedOperationError(f"Model '{model}' is not persisted as a table")
    if synth.ensure_table(db, model, definition) == 'created':
        report.created = True
    name = synth.create_index(db, model, field)
    report.indexes.append(name)

    indexes = definition.indexes
    if field not in indexes:
        indexes.append(field)
    definition.metadata['indexes'] = indexes
    _save(db, definition, report, {'action': 'addIndex', 'field': field, 'index': name}, 'addIndex')
    return report


def extend_enum(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                field: str, values: list) -> MigrationReport:
    """Union `values` into the allowed set of a Selection field."""
    definition = _definition(db, model)
    fd = definition.get_field(validate_field_name(field))
    if fd is None:
        raise NotFoundError(f"Field '{field}' is not declared on {model}")
    if fd.type is not FieldKind.SELECTION:
        raise ValidationError(f"{model}.{fd.name} is {fd.type}, not Selection")
    if not isinstance(values, (list, tuple, set)) or not values:
        raise ValidationError("extendEnum needs a non-empty list of values")

    report = MigrationReport(model=model)
    enums = dict(definition.metadata.get('enums') or {})
    key = next((k for k in enums if k.lower() == fd.name.lower()), fd.name)
    current = list(enums.get(key) or [])
    added = [v for v in dict.fromkeys(values) if v not in current]
    enums[key] = current + added
    definition.metadata['enums'] = enums
    _save(db, definition, report, {
        'action': 'extendEnum', 'field': fd.name, 'added': added,
    }, 'extendEnum')
    return report


def rename_field(db: sqlite3.Connection, synth: SchemaSynthesizer, model: str,
                 old: str, new: str) -> MigrationReport:
    """Explicit rename: catalog, column, document key, recorded indexes."""
    definition = _definition(db, model)
    validate_field_name(old)
    validate_field_name(new)
    of = definition.get_field(old)
    if of is None:
        raise NotFoundError(f"Field '{old}' is not declared on {model}")
    if definition.get_field(new) is not None:
        raise ValidationError(f"Field '{new}' already exists on {model}")
    if of.name.lower() == 'id':
        raise UnsupportedOperationError("The id field cannot be renamed")

    report = MigrationReport(model=model)
    definition.fields = [dataclasses.replace(f, name=new) if f is of else f
                         for f in definition.fields]
    enums = definition.metadata.get('enums') or {}
    if of.name in enums:
        enums[new] = enums.pop(of.name)
    indexes = definition.indexes
    renamed_index = of.name in indexes
    if renamed_index:
        definition.metadata['indexes'] = [new if i == of.name else i for i in indexes]
    _save(db, definition, report, {'action': 'renameField', 'from': of.name, 'to': new},
          'renameField')

    if _materialized(definition) and synth.table_exists(db, model):
        if rename_column(db, synth, model, of.name, new):
            report.renamed[of.name] = new
        if renamed_index:
            execute(db, f"DROP INDEX IF EXISTS {quote(synth.index_name(model, of.name))}")
            report.indexes.append(synth.create_index(db, model, new))
    return report


# ═══════════════════════════════════════════════════════════════════════════════
# DISPATCH
# ═══════════════════════════════════════════════════════════════════════════════

def _param(impact: dict, *keys, required: bool = True):
    for k in keys:
        if k in impact and impact[k] is not None:
            return impact[k]
    if required:
        raise ValidationError(f"Impact '{impact.get('action')}' is missing '{keys[0]}'")
    return None


def _field_name(value) -> str:
    if isinstance(value, dict):
        value = value.get('name')
    if not isinstance(value, str):
        raise ValidationError(f"Expected a field name, got {value!r}")
    return value


IMPACTS = {
    'createModelTable': lambda db, s, m, i: create_model_table(db, s, m),
    'addField': lambda db, s, m, i: add_field(db, s, m, _param(i, 'field')),
    'addRelation': lambda db, s, m, i: add_relation(db, s, m, _param(i, 'field')),
    'addIndex': lambda db, s, m, i: add_index(db, s, m, _field_name(_param(i, 'field'))),
    'extendEnum': lambda db, s, m, i: extend_enum(
        db, s, m, _field_name(_param(i, 'field')), _param(i, 'values')),
    'renameField': lambda db, s, m, i: rename_field(
        db, s, m, _param(i, 'from', 'from_'), _param(i, 'to')),
}


def apply_impact(db: sqlite3.Connection, synth: SchemaSynthesizer, impact: dict) -> MigrationReport:
    if not isinstance(impact, dict):
        raise ValidationError(f"Impact must be an object, got {type(impact).__name__}")
    action = impact.get('action')
    model = impact.get('targetModel') or impact.get('target_model')
    if not action or not isinstance(action, str):
        raise ValidationError("Impact is missing 'action'")
    if not model:
        raise ValidationError(f"Impact '{action}' is missing 'targetModel'")
    handler = IMPACTS.get(action)
    if handler is None:
        raise UnsupportedOperationError(f"Unknown impact action '{action}'")
    logger.info("applying %s to %s", action, model)
    return handler(db, synth, model, impact)
