"""
Identifier gate.

Model, field, alias and index names are interpolated into generated SQL, so
they are checked here before any statement is composed. Names are accepted or
rejected; nothing is escaped into trust. Values never pass through here: they
are always bound as parameters.
"""

import re

from schemata.errors import ValidationError

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
MAX_IDENTIFIER_LEN = 64

# sqlite reserves this prefix for its own tables
_RESERVED_PREFIX = 'sqlite_'


def _check(name, kind: str) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError(f"Invalid {kind} name: {name!r}")
    if len(name) > MAX_IDENTIFIER_LEN:
        raise ValidationError(
            f"Invalid {kind} name: {name[:20]!r}... exceeds {MAX_IDENTIFIER_LEN} characters")
    if not IDENTIFIER_RE.match(name):
        raise ValidationError(f"Invalid {kind} name: {name!r}")
    if name.lower().startswith(_RESERVED_PREFIX):
        raise ValidationError(f"Invalid {kind} name: {name!r} uses reserved prefix")
    return name


def validate_model_name(name) -> str:
    """Return `name` unchanged if it is a safe model name, else raise."""
    return _check(name, 'model')


def validate_field_name(name) -> str:
    """Return `name` unchanged if it is a safe field name, else raise."""
    return _check(name, 'field')


def validate_alias(name) -> str:
    return _check(name, 'alias')


def validate_table_prefix(prefix: str) -> str:
    """Table prefixes may be empty; otherwise they follow the identifier rule."""
    if prefix == '':
        return prefix
    return _check(prefix, 'table prefix')


def quote(ident: str) -> str:
    """Double-quote an identifier for SQL text.

    Table names are `<prefix><model>` and index names are built from table and
    field names, so the composite must still match the identifier pattern
    (length aside). Anything else is refused.
    """
    if not isinstance(ident, str) or not IDENTIFIER_RE.match(ident):
        raise ValidationError(f"Refusing to quote unsafe identifier: {ident!r}")
    return f'"{ident}"'


def json_path(field: str) -> str:
    """SQL string literal for the document path of a field: '$.field'."""
    return f"'$.{validate_field_name(field)}'"
