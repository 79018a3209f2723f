"""
Schemata types — field kinds, model definitions, query requests, records.

FieldKind is a closed enum: every member declares its column type where it is
defined, so adding a kind without deciding its storage is impossible.

Field definitions are stored inside schema_manager.metadata as a "fields"
array of camelCase objects:

    {"name": "age", "type": "Number", "required": false, "length": null,
     "defaultValue": null, "autoIncrement": false, "primaryKey": false,
     "relation": null}
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from schemata.errors import ValidationError
from schemata.sanitize import validate_field_name, validate_model_name

# System columns every model table carries (or may carry, for `data`)
RESERVED_COLUMNS = frozenset({'data', 'created_at', 'updated_at'})

_TRUE = {'true', '1', 'yes'}
_FALSE = {'false', '0', 'no'}


class FieldKind(Enum):
    """Field type. Value is (label, sqlite column type)."""
    STRING = ('String', 'TEXT')
    TEXT = ('Text', 'TEXT')
    NUMBER = ('Number', 'REAL')
    BOOLEAN = ('Boolean', 'INTEGER')
    DATE = ('Date', 'TEXT')
    JSON = ('Json', 'TEXT')
    SELECTION = ('Selection', 'TEXT')
    RELATION = ('Relation', 'TEXT')

    def __init__(self, label: str, sql_type: str):
        self.label = label
        self.sql_type = sql_type

    @property
    def supports_length(self) -> bool:
        return self in (FieldKind.STRING, FieldKind.TEXT)

    @property
    def quoted_default(self) -> bool:
        """Defaults render as quoted literals for every kind stored as TEXT."""
        return self.sql_type == 'TEXT'

    @classmethod
    def parse(cls, value) -> 'FieldKind':
        """Accept a FieldKind, its label (any case), member name, or ordinal."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
        if isinstance(value, str):
            wanted = value.strip().lower()
            for kind in cls:
                if kind.label.lower() == wanted or kind.name.lower() == wanted:
                    return kind
        raise ValidationError(f"Unknown field type: {value!r}")

    def __str__(self):
        return self.label


def parse_flag(value, default: bool = False) -> bool:
    """Metadata booleans arrive as bools or as "true"/"false" strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
    return default


# ═══════════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════════

REFERENTIAL_ACTIONS = ('CASCADE', 'SET NULL', 'SET DEFAULT', 'RESTRICT', 'NO ACTION')


@dataclass
class Relation:
    """Foreign key from a field to another model's id."""
    model: str
    on_delete: Optional[str] = None
    on_update: Optional[str] = None

    def validate(self) -> 'Relation':
        validate_model_name(self.model)
        self.on_delete = _normalize_action(self.on_delete, 'on_delete')
        self.on_update = _normalize_action(self.on_update, 'on_update')
        return self

    def to_dict(self) -> dict:
        return {'model': self.model, 'onDelete': self.on_delete, 'onUpdate': self.on_update}

    @classmethod
    def from_dict(cls, data) -> Optional['Relation']:
        if data is None:
            return None
        if isinstance(data, Relation):
            return data
        if isinstance(data, str):
            return cls(model=data)
        if not isinstance(data, dict):
            raise ValidationError(f"Malformed relation: {data!r}")
        d = _fold_keys(data)
        if not d.get('model'):
            raise ValidationError("Relation requires a target model")
        return cls(model=d['model'], on_delete=d.get('ondelete'), on_update=d.get('onupdate'))


def _normalize_action(action, label: str) -> Optional[str]:
    if action is None or (isinstance(action, str) and not action.strip()):
        return None
    if not isinstance(action, str):
        raise ValidationError(f"Invalid {label} action: {action!r}")
    normalized = ' '.join(action.replace('_', ' ').split()).upper()
    if normalized not in REFERENTIAL_ACTIONS:
        raise ValidationError(f"Invalid {label} action: {action!r}")
    return normalized


def _fold_keys(data: dict) -> dict:
    """Case- and underscore-insensitive key lookup for serialized definitions."""
    return {str(k).replace('_', '').lower(): v for k, v in data.items()}


@dataclass
class FieldDefinition:
    name: str
    type: FieldKind = FieldKind.STRING
    required: bool = False
    length: Optional[int] = None
    default: Any = None
    auto_increment: bool = False
    primary_key: bool = False
    relation: Optional[Relation] = None

    def __post_init__(self):
        self.type = FieldKind.parse(self.type)
        if isinstance(self.relation, (dict, str)):
            self.relation = Relation.from_dict(self.relation)

    def validate(self) -> 'FieldDefinition':
        """Check the definition is storable. Returns self for chaining."""
        validate_field_name(self.name)
        if self.name.lower() in RESERVED_COLUMNS:
            raise ValidationError(f"Field name '{self.name}' is reserved")
        if self.length is not None:
            if isinstance(self.length, bool) or not isinstance(self.length, int) or self.length <= 0:
                raise ValidationError(f"Field '{self.name}': length must be a positive integer")
            if not self.type.supports_length:
                raise ValidationError(
                    f"Field '{self.name}': length applies to String/Text, not {self.type}")
        if self.auto_increment and self.type is not FieldKind.NUMBER:
            raise ValidationError(f"Field '{self.name}': auto-increment requires Number")
        if self.default is not None:
            self._check_default()
        if self.relation is not None:
            self.relation.validate()
        return self

    def _check_default(self):
        value, kind = self.default, self.type
        if kind is FieldKind.NUMBER:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif kind is FieldKind.BOOLEAN:
            ok = isinstance(value, bool) or value in (0, 1)
        elif kind is FieldKind.JSON:
            try:
                json.dumps(value)
                ok = True
            except (TypeError, ValueError):
                ok = False
        elif kind is FieldKind.DATE:
            ok = isinstance(value, (str, date))
        else:
            ok = isinstance(value, str)
            if ok and self.length is not None and len(value) > self.length:
                raise ValidationError(
                    f"Field '{self.name}': default longer than length {self.length}")
        if not ok:
            raise ValidationError(
                f"Field '{self.name}': default {value!r} does not match type {kind}")

    def signature(self) -> tuple:
        """What the rename heuristic compares: type, length, required, relation target."""
        target = self.relation.model.lower() if self.relation else None
        return (self.type, self.length, bool(self.required), target)

    def to_sql(self, value):
        """Coerce a caller value into what the column stores."""
        if value is None:
            return None
        kind = self.type
        if kind is FieldKind.BOOLEAN:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, (int, float)):
                return 1 if value else 0
            if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
                return 1 if value.strip().lower() in _TRUE else 0
            raise ValidationError(f"Field '{self.name}': {value!r} is not a boolean")
        if kind is FieldKind.NUMBER:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, (int, float)):
                return value
            if isinstance(value, str):
                try:
                    return float(value)
                except ValueError:
                    pass
            raise ValidationError(f"Field '{self.name}': {value!r} is not a number")
        if kind is FieldKind.JSON:
            return value if isinstance(value, str) else json.dumps(value)
        if kind is FieldKind.DATE:
            if isinstance(value, (datetime, date)):
                return value.isoformat()
            return str(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value if isinstance(value, str) else str(value)

    def to_dict(self) -> dict:
        default = self.default
        if isinstance(default, (datetime, date)):
            default = default.isoformat()
        return {
            'name': self.name,
            'type': self.type.label,
            'required': bool(self.required),
            'length': self.length,
            'defaultValue': default,
            'autoIncrement': bool(self.auto_increment),
            'primaryKey': bool(self.primary_key),
            'relation': self.relation.to_dict() if self.relation else None,
        }

    @classmethod
    def from_dict(cls, data) -> 'FieldDefinition':
        if isinstance(data, FieldDefinition):
            return data
        if not isinstance(data, dict):
            raise ValidationError(f"Malformed field definition: {data!r}")
        d = _fold_keys(data)
        if not d.get('name'):
            raise ValidationError("Field definition requires a name")
        default = d['defaultvalue'] if 'defaultvalue' in d else d.get('default')
        return cls(
            name=d['name'],
            type=FieldKind.parse(d.get('type', 'String')),
            required=parse_flag(d.get('required')),
            length=d.get('length', d.get('maxlength')),
            default=default,
            auto_increment=parse_flag(d.get('autoincrement')),
            primary_key=parse_flag(d.get('primarykey')),
            relation=Relation.from_dict(d.get('relation')),
        )


@dataclass
class ModelDefinition:
    name: str
    fields: list = field(default_factory=list)
    module: str = ''
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.fields = [FieldDefinition.from_dict(f) for f in (self.fields or [])]
        if self.metadata is None:
            self.metadata = {}
        if self.module is None:
            self.module = ''

    def validate(self) -> 'ModelDefinition':
        validate_model_name(self.name)
        if not isinstance(self.metadata, dict):
            raise ValidationError(f"Model '{self.name}': metadata must be an object")
        seen = set()
        for f in self.fields:
            f.validate()
            key = f.name.lower()
            if key in seen:
                raise ValidationError(f"Model '{self.name}': duplicate field '{f.name}'")
            seen.add(key)
        return self

    def get_field(self, name: str) -> Optional[FieldDefinition]:
        """Case-insensitive field lookup."""
        wanted = name.lower()
        for f in self.fields:
            if f.name.lower() == wanted:
                return f
        return None

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def has_auto_increment(self) -> bool:
        return any(f.auto_increment for f in self.fields)

    @property
    def primary_key_fields(self) -> list[FieldDefinition]:
        return [f for f in self.fields if f.primary_key]

    def flag(self, key: str, default: bool = False) -> bool:
        return parse_flag(self.metadata.get(key), default)

    def enum_values(self, field_name: str) -> list:
        enums = self.metadata.get('enums') or {}
        for k, v in enums.items():
            if k.lower() == field_name.lower():
                return list(v or [])
        return []

    @property
    def indexes(self) -> list[str]:
        return list(self.metadata.get('indexes') or [])

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'module': self.module,
            'metadata': {k: v for k, v in self.metadata.items() if k != 'fields'},
            'fields': [f.to_dict() for f in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ModelDefinition':
        if not isinstance(data, dict):
            raise ValidationError(f"Malformed model definition: {data!r}")
        d = _fold_keys(data)
        name = d.get('name') or d.get('modelname')
        if not name:
            raise ValidationError("Model definition requires a name")
        metadata = dict(d.get('metadata') or {})
        fields = d.get('fields')
        if fields is None:
            fields = metadata.get('fields') or []
        metadata.pop('fields', None)
        return cls(name=name, fields=list(fields), module=d.get('module') or '',
                   metadata=metadata)


@dataclass
class DynamicRecord:
    id: str
    data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'data': self.data,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# QUERY REQUESTS
# ═══════════════════════════════════════════════════════════════════════════════

class FilterOp(Enum):
    EQ = 'eq'
    NEQ = 'neq'
    GT = 'gt'
    GTE = 'gte'
    LT = 'lt'
    LTE = 'lte'
    CONTAINS = 'contains'

    @classmethod
    def parse(cls, value) -> 'FilterOp':
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            v = value.strip().lower()
            v = _OP_SYMBOLS.get(v, v)
            for op in cls:
                if op.value == v:
                    return op
        raise ValidationError(f"Unknown filter operator: {value!r}")


_OP_SYMBOLS = {
    '=': 'eq', '==': 'eq', '!=': 'neq', '<>': 'neq',
    '>': 'gt', '>=': 'gte', '<': 'lt', '<=': 'lte', 'like': 'contains',
}


class Combinator(Enum):
    AND = 'AND'
    OR = 'OR'


class JoinKind(Enum):
    INNER = 'INNER'
    LEFT = 'LEFT'


@dataclass
class Filter:
    """One comparison. `field` may be alias-qualified: "author.name"."""
    field: str
    op: FilterOp = FilterOp.EQ
    value: Any = None

    def __post_init__(self):
        self.op = FilterOp.parse(self.op)


@dataclass
class Join:
    target_model: str
    source_field: str
    target_field: str = 'id'
    kind: JoinKind = JoinKind.INNER
    alias: Optional[str] = None
    source: Optional[str] = None
    """Model name or alias the join hangs off. None = base model."""


@dataclass
class Include:
    """Declarative related-model fetch, flattened into joins before translation."""
    model: str
    foreign_key: Optional[str] = None
    target_key: Optional[str] = None
    required: bool = False
    alias: Optional[str] = None
    where: list = field(default_factory=list)
    include: list = field(default_factory=list)


@dataclass
class QueryRequest:
    where: list = field(default_factory=list)
    combinator: Combinator = Combinator.AND
    joins: list = field(default_factory=list)
    includes: list = field(default_factory=list)
    group_by: list = field(default_factory=list)
    having: list = field(default_factory=list)
    order_by: Optional[str] = None
    order_desc: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None
