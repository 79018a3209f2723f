"""
Schemata Test Fixtures

File-backed stores under tmp_path, raw catalog connections for the lower
layers, and a few canonical model definitions.

Run with: pytest tests/ -v
"""
import pytest

from schemata import registry
from schemata.core import open_store
from schemata.schema import SchemaSynthesizer
from schemata.store import Store
from schemata.types import ModelDefinition


# =============================================================================
# CANONICAL DEFINITIONS
# =============================================================================

USER = {
    "name": "User",
    "module": "accounts",
    "fields": [
        {"name": "name", "type": "String", "required": True},
        {"name": "age", "type": "Number"},
    ],
}

AUTHOR = {
    "name": "Author",
    "fields": [
        {"name": "name", "type": "String", "required": True},
        {"name": "country", "type": "String"},
    ],
}

POST = {
    "name": "Post",
    "fields": [
        {"name": "title", "type": "String", "required": True},
        {"name": "category", "type": "String"},
        {"name": "views", "type": "Number", "defaultValue": 0},
        {"name": "published", "type": "Boolean"},
        {"name": "author_id", "type": "Relation",
         "relation": {"model": "Author", "onDelete": "cascade"}},
    ],
}


def table_columns(db, table: str) -> list[str]:
    return [r[1] for r in db.execute(f'PRAGMA table_info("{table}")').fetchall()]


def index_names(db, table: str) -> list[str]:
    return [r[0] for r in db.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name=?", (table,)
    ).fetchall()]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def db(tmp_path):
    """Raw connection with the catalog tables in place."""
    conn = open_store(str(tmp_path / "raw.db"))
    registry.ensure_catalog(conn)
    yield conn
    conn.close()


@pytest.fixture
def synth():
    return SchemaSynthesizer("records_")


@pytest.fixture
def store(tmp_path):
    """File-backed store, foreign keys on, default prefix."""
    s = Store(tmp_path / "store.db", table_prefix="records_", foreign_keys=True)
    s.init()
    yield s
    s.close()


@pytest.fixture
def mem_store():
    s = Store(":memory:", table_prefix="records_")
    yield s
    s.close()


@pytest.fixture
def raw(store):
    """Side connection onto the store's file, for asserting physical state."""
    conn = open_store(store.db_path)
    yield conn
    conn.close()


@pytest.fixture
def blog(store):
    """Author + Post registered, a few rows each."""
    store.register_model(AUTHOR)
    store.register_model(POST)
    ada = store.create_record("Author", {"name": "Ada", "country": "UK"}, id="ada")
    alan = store.create_record("Author", {"name": "Alan", "country": "UK"}, id="alan")
    grace = store.create_record("Author", {"name": "Grace", "country": "US"}, id="grace")
    posts = [
        ("p1", "Engines", "tech", 120, True, ada.id),
        ("p2", "Notes", "tech", 40, True, ada.id),
        ("p3", "Machines", "philosophy", 300, False, alan.id),
        ("p4", "Compilers", "tech", 90, True, grace.id),
        ("p5", "Orphan", "misc", 5, False, None),
    ]
    for pid, title, category, views, published, author in posts:
        store.create_record("Post", {
            "title": title, "category": category, "views": views,
            "published": published, "author_id": author,
        }, id=pid)
    return store


@pytest.fixture
def user_definition():
    return ModelDefinition.from_dict(USER)
