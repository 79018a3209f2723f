"""
Schemata Query Translator — QueryRequest -> one SELECT against the live schema.

Access strategy (decided per query, from a fresh column lookup):
- id, created_at, updated_at        -> always the column
- field with a column                -> "a"."field"
- field without one, table has data  -> json_extract("a"."data", '$.field')
- neither                            -> ValidationError

Requests are first lowered into a statement IR (Select + Condition), which is
rendered exactly once. Caller values only ever travel as bound parameters.

Functions:
- flatten_includes()          -> Include tree -> (joins, filters)
- QueryTranslator.translate() -> CompiledQuery(sql, params, grouped, labels, kinds)
- QueryTranslator.where_clause() -> Condition for delete-by-filter
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from schemata import registry
from schemata.errors import NotFoundError, ValidationError
from schemata.sanitize import json_path, quote, validate_alias, validate_field_name, validate_model_name
from schemata.schema import SchemaSynthesizer
from schemata.types import (
    Combinator, FieldKind, Filter, FilterOp, Include, Join, JoinKind,
    ModelDefinition, QueryRequest,
)

logger = logging.getLogger(__name__)

_DIRECT = ('id', 'created_at', 'updated_at')
_SYMBOLS = {
    FilterOp.EQ: '=', FilterOp.NEQ: '!=',
    FilterOp.GT: '>', FilterOp.GTE: '>=',
    FilterOp.LT: '<', FilterOp.LTE: '<=',
}
COUNT = 'count'


# ═══════════════════════════════════════════════════════════════════════════════
# STATEMENT IR
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Condition:
    """A rendered predicate and the values it binds, in order."""
    sql: str
    params: list = field(default_factory=list)


@dataclass
class Select:
    table: str
    alias: str
    columns: list = field(default_factory=list)
    joins: list = field(default_factory=list)
    where: list = field(default_factory=list)
    combinator: Combinator = Combinator.AND
    group_by: list = field(default_factory=list)
    having: list = field(default_factory=list)
    order_by: Optional[str] = None
    order_desc: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None

    def render(self) -> tuple[str, list]:
        params = []
        parts = [f"SELECT {', '.join(self.columns)}",
                 f"FROM {quote(self.table)} {quote(self.alias)}"]
        parts.extend(self.joins)
        if self.where:
            glue = f" {self.combinator.value} "
            parts.append("WHERE " + glue.join(f"({c.sql})" for c in self.where))
            for c in self.where:
                params.extend(c.params)
        if self.group_by:
            parts.append("GROUP BY " + ', '.join(self.group_by))
        if self.having:
            parts.append("HAVING " + ' AND '.join(f"({c.sql})" for c in self.having))
            for c in self.having:
                params.extend(c.params)
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by} {'DESC' if self.order_desc else 'ASC'}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            if self.limit is None:
                parts.append("LIMIT -1")
            parts.append(f"OFFSET {self.offset}")
        return '\n'.join(parts), params


@dataclass
class CompiledQuery:
    sql: str
    params: list
    grouped: bool = False
    labels: list = field(default_factory=list)
    kinds: dict = field(default_factory=dict)
    group_by: list = field(default_factory=list)


@dataclass
class _Scope:
    """One table in the FROM clause."""
    alias: str
    label: str
    model: str
    table: str
    columns: dict
    definition: Optional[ModelDefinition]

    @property
    def has_data(self) -> bool:
        return 'data' in self.columns


# ═══════════════════════════════════════════════════════════════════════════════
# INCLUDES
# ═══════════════════════════════════════════════════════════════════════════════

def _as_include(inc) -> Include:
    if isinstance(inc, Include):
        return inc
    if isinstance(inc, dict):
        try:
            return Include(**inc)
        except TypeError as e:
            raise ValidationError(f"Malformed include: {inc!r}") from e
    raise ValidationError(f"Malformed include: {inc!r}")


def _default_foreign_key(parent: Optional[ModelDefinition], target: str) -> str:
    if parent is not None:
        for f in parent.fields:
            if f.relation is not None and f.relation.model == target:
                return f.name
    return f"{target}_id"


def flatten_includes(includes: list, parent: Optional[ModelDefinition],
                     lookup, source: str = None) -> tuple[list, list]:
    """Lower an Include tree into joins and alias-qualified filters.

    `lookup(model)` returns the definition of an included model (or None);
    it supplies default foreign keys for nested levels.
    """
    joins, filters = [], []
    for raw in includes or []:
        inc = _as_include(raw)
        validate_model_name(inc.model)
        label = inc.alias or inc.model
        joins.append(Join(
            target_model=inc.model,
            source_field=inc.foreign_key or _default_foreign_key(parent, inc.model),
            target_field=inc.target_key or 'id',
            kind=JoinKind.INNER if inc.required else JoinKind.LEFT,
            alias=inc.alias,
            source=source,
        ))
        for f in inc.where or []:
            if isinstance(f, dict):
                f = Filter(**f)
            filters.append(Filter(f"{label}.{f.field}", f.op, f.value))
        if inc.include:
            nested_joins, nested_filters = flatten_includes(
                inc.include, lookup(inc.model), lookup, source=label)
            joins.extend(nested_joins)
            filters.extend(nested_filters)
    return joins, filters


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSLATOR
# ═══════════════════════════════════════════════════════════════════════════════

def _bind(value):
    """Native binding: bools as 0/1, dates as ISO text, containers as JSON."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _escape_like(value: str) -> str:
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def _non_negative(value, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
    return value


class QueryTranslator:
    """Builds statements against whatever physical schema exists right now."""

    def __init__(self, synth: SchemaSynthesizer):
        self.synth = synth

    def _scope(self, db: sqlite3.Connection, model: str, alias: str, label: str) -> _Scope:
        table = self.synth.table_name(model)
        cols = self.synth.columns(db, table)
        if not cols:
            raise NotFoundError(f"Model '{model}' has no table ({table})")
        return _Scope(alias=alias, label=label, model=model, table=table,
                      columns=cols, definition=registry.get(db, model))

    # ── access strategy ──────────────────────────────────────────────────────

    @staticmethod
    def access(scope: _Scope, name: str) -> str:
        validate_field_name(name)
        a = quote(scope.alias)
        key = name.lower()
        if key in _DIRECT:
            return f'{a}.{quote(key)}'
        if key in scope.columns:
            return f'{a}.{quote(scope.columns[key])}'
        if scope.has_data:
            return f'json_extract({a}."data", {json_path(name)})'
        raise ValidationError(f"Unknown field '{name}' on model '{scope.model}'")

    def _resolve(self, scopes: list, ref: str) -> tuple[_Scope, str]:
        """'field' -> base scope; 'label.field' -> that join's scope."""
        if not isinstance(ref, str) or not ref:
            raise ValidationError(f"Invalid field reference: {ref!r}")
        if '.' not in ref:
            return scopes[0], ref
        label, name = ref.split('.', 1)
        for s in scopes:
            if s.label == label or s.alias == label:
                return s, name
        raise ValidationError(f"Unknown alias '{label}' in '{ref}'")

    def _coerce(self, scope: _Scope, name: str, value):
        """Numeric and boolean strings are compared as what the field stores."""
        if scope.definition is None or value is None or name.lower() in _DIRECT:
            return _bind(value)
        fd = scope.definition.get_field(name)
        if fd is not None and fd.type in (FieldKind.NUMBER, FieldKind.BOOLEAN, FieldKind.DATE):
            return fd.to_sql(value)
        return _bind(value)

    def condition(self, expr: str, op: FilterOp, value) -> Condition:
        if value is None and op is FilterOp.EQ:
            return Condition(f"{expr} IS NULL")
        if value is None and op is FilterOp.NEQ:
            return Condition(f"{expr} IS NOT NULL")
        if value is None:
            raise ValidationError(f"Operator '{op.value}' needs a value")
        if op is FilterOp.CONTAINS:
            text = value if isinstance(value, str) else str(_bind(value))
            return Condition(f"{expr} LIKE ? ESCAPE '\\'", [f"%{_escape_like(text)}%"])
        return Condition(f"{expr} {_SYMBOLS[op]} ?", [value])

    def _filter(self, scopes: list, flt) -> Condition:
        if isinstance(flt, dict):
            flt = Filter(**flt)
        scope, name = self._resolve(scopes, flt.field)
        value = flt.value if flt.op is FilterOp.CONTAINS else self._coerce(scope, name, flt.value)
        return self.condition(self.access(scope, name), flt.op, value)

    # ── joins ────────────────────────────────────────────────────────────────

    def _join(self, db, scopes: list, join: Join, used: set) -> str:
        if isinstance(join, dict):
            join = Join(**join)
        validate_model_name(join.target_model)
        kind = join.kind if isinstance(join.kind, JoinKind) else JoinKind(str(join.kind).upper())
        if join.alias:
            alias = validate_alias(join.alias)
            if alias in used:
                raise ValidationError(f"Duplicate join alias '{alias}'")
        else:
            alias = next(chr(c) for c in range(ord('b'), ord('z') + 1) if chr(c) not in used)
        label = join.alias or join.target_model
        if any(s.label == label for s in scopes):
            raise ValidationError(
                f"Join label '{label}' already in use; give the join an alias")
        used.add(alias)

        if join.source:
            source = next((s for s in scopes if join.source in (s.label, s.alias)), None)
            if source is None:
                raise ValidationError(f"Unknown join source '{join.source}'")
        else:
            source = scopes[0]
        target = self._scope(db, join.target_model, alias, label)
        on = f"{self.access(target, join.target_field)} = {self.access(source, join.source_field)}"
        scopes.append(target)
        return f"{kind.value} JOIN {quote(target.table)} {quote(alias)} ON {on}"

    # ── entry points ─────────────────────────────────────────────────────────

    def translate(self, db: sqlite3.Connection, model: str,
                  request: QueryRequest = None, count: bool = False) -> CompiledQuery:
        """Compile `request` against `model`.

        count=True returns a single-row COUNT(*) over the filtered rows
        (ordering and paging ignored).
        """
        request = request or QueryRequest()
        base = self._scope(db, validate_model_name(model), 'a', model)
        scopes = [base]
        used = {'a'}
        combinator = request.combinator
        if not isinstance(combinator, Combinator):
            combinator = Combinator(str(combinator).upper())

        include_joins, include_filters = flatten_includes(
            request.includes, base.definition, lambda m: registry.get(db, m))
        joins = [self._join(db, scopes, j, used)
                 for j in list(request.joins) + include_joins]

        stmt = Select(table=base.table, alias='a', joins=joins, combinator=combinator)
        stmt.where = [self._filter(scopes, f) for f in list(request.where) + include_filters]
        kinds = {}

        if count:
            stmt.columns = ['COUNT(*) AS "count"']
            sql, params = stmt.render()
            return CompiledQuery(sql=sql, params=params)

        group_by = list(request.group_by or [])
        if group_by:
            for ref in group_by:
                scope, name = self._resolve(scopes, ref)
                expr = self.access(scope, name)
                stmt.group_by.append(expr)
                stmt.columns.append(f"{expr} AS {quote_label(ref)}")
                fd = scope.definition.get_field(name) if scope.definition else None
                if fd is not None:
                    kinds[ref] = fd.type
            stmt.columns.append(f'COUNT(*) AS "{COUNT}"')
            for h in request.having or []:
                if isinstance(h, dict):
                    h = Filter(**h)
                if h.field == COUNT:
                    stmt.having.append(self.condition('COUNT(*)', h.op, _bind(h.value)))
                else:
                    stmt.having.append(self._filter(scopes, h))
        else:
            if request.having:
                raise ValidationError("having requires group_by")
            stmt.columns.append('"a".*')
            _collect_kinds(kinds, base, prefix='')
            for s in scopes[1:]:
                for actual in s.columns.values():
                    stmt.columns.append(
                        f'{quote(s.alias)}.{quote(actual)} AS {quote_label(f"{s.label}.{actual}")}')
                _collect_kinds(kinds, s, prefix=f"{s.label}.")

        if request.order_by:
            if group_by and request.order_by == COUNT:
                stmt.order_by = f'"{COUNT}"'
            else:
                scope, name = self._resolve(scopes, request.order_by)
                stmt.order_by = self.access(scope, name)
            stmt.order_desc = bool(request.order_desc)
        stmt.limit = _non_negative(request.limit, 'limit')
        stmt.offset = _non_negative(request.offset, 'offset')

        sql, params = stmt.render()
        logger.debug("translated %s: %s %s", model, sql, params)
        return CompiledQuery(sql=sql, params=params, grouped=bool(group_by),
                             labels=[s.label for s in scopes[1:]], kinds=kinds,
                             group_by=group_by)

    def where_clause(self, db: sqlite3.Connection, model: str, filters: list,
                     combinator: Combinator = Combinator.AND) -> Condition:
        """Filters on the base model only, aliased "a". Empty -> always true."""
        base = self._scope(db, validate_model_name(model), 'a', model)
        conds = [self._filter([base], f) for f in filters or []]
        if not conds:
            return Condition('1 = 1')
        if not isinstance(combinator, Combinator):
            combinator = Combinator(str(combinator).upper())
        glue = f" {combinator.value} "
        params = [p for c in conds for p in c.params]
        return Condition(glue.join(f"({c.sql})" for c in conds), params)


def quote_label(label: str) -> str:
    """Output column label like "author.name". Each dotted part passes the
    identifier gate; the whole is quoted as one name."""
    for part in label.split('.'):
        validate_field_name(part)
    return f'"{label}"'


def _collect_kinds(kinds: dict, scope: _Scope, prefix: str):
    if scope.definition is None:
        return
    for f in scope.definition.fields:
        actual = scope.columns.get(f.name.lower())
        if actual is not None:
            kinds[f"{prefix}{actual}"] = f.type
