"""
Schemata Record Mapper — result rows -> DynamicRecord.

Typed columns win over the `data` document: the document only fills keys
whose typed value is missing or NULL. Joined columns keep their
"<label>.<column>" names; a joined document merges as "<label>.<key>".
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from schemata.types import DynamicRecord, FieldKind

logger = logging.getLogger(__name__)

_SKIP = ('id', 'created_at', 'updated_at', 'data')


def _timestamp(value, name: str, record_id) -> datetime:
    if value:
        try:
            ts = datetime.fromisoformat(str(value))
            return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    logger.debug("record %s: %s %r unreadable, using now", record_id, name, value)
    return datetime.now(timezone.utc)


def convert(kind: Optional[FieldKind], value):
    """Stored value -> caller value for one column."""
    if value is None or kind is None:
        return value
    if kind is FieldKind.BOOLEAN:
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes')
        return bool(value)
    if kind is FieldKind.JSON and isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _document(text, record_id) -> dict:
    if text is None or text == '':
        return {}
    if isinstance(text, dict):
        return text
    try:
        doc = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        logger.warning("record %s: data column is not JSON, ignored", record_id)
        return {}
    if not isinstance(doc, dict):
        logger.warning("record %s: data column is not an object, ignored", record_id)
        return {}
    return doc


def _merge(data: dict, doc: dict, prefix: str = ''):
    for key, value in doc.items():
        name = f"{prefix}{key}"
        if data.get(name) is None:
            data[name] = value


def to_record(row, kinds: dict = None, labels: list = ()) -> DynamicRecord:
    """Build a DynamicRecord from one row (sqlite3.Row or dict)."""
    kinds = kinds or {}
    d = dict(row)
    record_id = d.get('id')
    data = {}
    joined_docs = {}
    for key, value in d.items():
        if key in _SKIP:
            continue
        label, dot, col = key.partition('.')
        if dot and label in labels and col == 'data':
            joined_docs[label] = value
            continue
        data[key] = convert(kinds.get(key), value)

    _merge(data, _document(d.get('data'), record_id))
    for label, text in joined_docs.items():
        _merge(data, _document(text, record_id), prefix=f"{label}.")

    return DynamicRecord(
        id='' if record_id is None else str(record_id),
        data=data,
        created_at=_timestamp(d.get('created_at'), 'created_at', record_id),
        updated_at=_timestamp(d.get('updated_at'), 'updated_at', record_id),
    )


def to_group_record(row, group_by: list, kinds: dict = None) -> DynamicRecord:
    """Grouped row -> record holding the group fields and `count`."""
    kinds = kinds or {}
    d = dict(row)
    data = {g: convert(kinds.get(g), d.get(g)) for g in group_by}
    data['count'] = d.get('count', 0)
    now = datetime.now(timezone.utc)
    return DynamicRecord(id=uuid.uuid4().hex, data=data, created_at=now, updated_at=now)
