"""
Schemata — runtime models on SQLite.

Models are defined at runtime and stored one table per model. Fields become
typed columns; models without declared fields keep a raw JSON `data` column.

Layout:
  core.py        connection plumbing, savepoints, config
  sanitize.py    identifier gate (every name in generated SQL passes here)
  types.py       field kinds, definitions, query requests, records
  registry.py    schema_manager / schema_history / schema_counters catalog
  schema.py      table + column synthesis, existence cache
  migrations.py  additive columns, rename detection, data -> typed rebuild
  query.py       QueryRequest -> SQL + params
  mapper.py      rows -> DynamicRecord
  impacts.py     named schema changes (addField, addIndex, ...)
  graph.py       relation graph, drop order (networkx)
  store.py       public surface: Store
  cli.py         `schemata` command
"""

from schemata.errors import (  # noqa: F401
    SchemataError, ValidationError, NotFoundError, ConflictError,
    UnsupportedOperationError, StorageError,
)
from schemata.types import (  # noqa: F401
    FieldKind, Relation, FieldDefinition, ModelDefinition, DynamicRecord,
    FilterOp, Combinator, JoinKind, Filter, Join, Include, QueryRequest,
)
from schemata.store import Store  # noqa: F401

__version__ = "0.3.0"
