"""Tests for schemata.migrations — additive columns, renames, document rebuilds."""

import json

import pytest

from schemata import registry
from schemata.core import StepResult, savepoint
from schemata.errors import StorageError, ValidationError
from schemata.migrations import (
    MigrationReport, detect_renames, migrate, rebuild_typed, rename_column, resolve_renames,
)
from schemata.types import FieldDefinition, ModelDefinition

from conftest import USER, index_names, table_columns

pytestmark = pytest.mark.migration


def _model(name, *fields, **metadata):
    return ModelDefinition(name, [dict(f) for f in fields], metadata=metadata)


def _insert_docs(db, table, docs):
    for i, doc in enumerate(docs, start=1):
        db.execute(f'INSERT INTO "{table}" (id, data) VALUES (?, ?)', (f"d{i}", json.dumps(doc)))


class TestRegisterFlow:

    def test_fresh_model_creates_table(self, db, synth):
        report = migrate(db, synth, ModelDefinition.from_dict(USER))
        assert report.created is True
        assert report.ok and report.changed
        assert table_columns(db, "records_User") == [
            "id", "name", "age", "created_at", "updated_at"]
        ops = [h['operation'] for h in registry.history(db, "User")]
        assert ops == ["register", "createTable"]

    def test_additive_field(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        grown = ModelDefinition.from_dict(USER)
        grown.fields.append(FieldDefinition("email"))
        report = migrate(db, synth, grown)
        assert report.created is False
        assert report.added_columns == ["email"]
        assert "email" in table_columns(db, "records_User")
        assert registry.history(db, "User")[-1]['operation'] == "addColumn"

    def test_unchanged_definition_is_noop(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        report = migrate(db, synth, ModelDefinition.from_dict(USER))
        assert not report.changed
        assert report.warnings == []

    def test_existing_rows_survive(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        db.execute("INSERT INTO records_User (id, name, age) VALUES ('u1', 'Ada', 36)")
        grown = _model("User", {"name": "name", "required": True},
                       {"name": "age", "type": "Number"}, {"name": "email"})
        migrate(db, synth, grown)
        row = db.execute("SELECT name, age, email FROM records_User").fetchone()
        assert tuple(row) == ("Ada", 36.0, None)

    def test_required_field_added_as_nullable(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        grown = ModelDefinition.from_dict(USER)
        grown.fields.append(FieldDefinition("email", required=True))
        report = migrate(db, synth, grown)
        assert any("added as nullable" in w for w in report.warnings)
        db.execute("INSERT INTO records_User (id, name) VALUES ('u2', 'Alan')")

    def test_type_change_warned_not_applied(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        changed = _model("User", {"name": "name", "required": True}, {"name": "age"})
        report = migrate(db, synth, changed)
        assert any("type change of 'age'" in w for w in report.warnings)
        col = [r for r in db.execute('PRAGMA table_info("records_User")') if r['name'] == 'age']
        assert col[0]['type'] == "REAL"

    def test_persist_as_table_false(self, db, synth):
        report = migrate(db, synth, _model("Draft", {"name": "title"}, persistAsTable=False))
        assert report.created is False
        assert registry.exists(db, "Draft")
        assert synth.table_exists(db, "Draft") is False

    def test_indexes_created_with_table(self, db, synth):
        model = ModelDefinition.from_dict(USER)
        model.metadata["indexes"] = ["age"]
        report = migrate(db, synth, model)
        assert report.indexes == ["idx_records_User_age"]
        assert "idx_records_User_age" in index_names(db, "records_User")

    def test_index_declared_later(self, db, synth):
        migrate(db, synth, ModelDefinition.from_dict(USER))
        model = ModelDefinition.from_dict(USER)
        model.metadata["indexes"] = ["age"]
        assert migrate(db, synth, model).indexes == ["idx_records_User_age"]
        again = migrate(db, synth, model)
        assert again.indexes == []
        assert not again.changed

    def test_report_to_dict(self, db, synth):
        report = migrate(db, synth, ModelDefinition.from_dict(USER))
        d = report.to_dict()
        assert d['model'] == "User"
        assert d['created'] is True
        assert d['ok'] is True

    def test_failed_step_marks_report(self):
        report = MigrationReport(model="User")
        report.record(StepResult(name="log", success=False, error="disk full"))
        assert report.ok is False
        assert report.warnings == ["log: disk full"]


class TestRenames:

    OLD = _model("User", {"name": "name"}, {"name": "email", "length": 100})

    def test_unique_match_is_rename(self):
        new = _model("User", {"name": "name"}, {"name": "contact_email", "length": 100})
        assert detect_renames(self.OLD, new) == {"email": "contact_email"}

    def test_signature_mismatch_is_additive(self):
        new = _model("User", {"name": "name"}, {"name": "contact_email", "length": 120})
        assert detect_renames(self.OLD, new) == {}

    def test_ambiguous_removed_side(self):
        old = _model("User", {"name": "a"}, {"name": "b"})
        new = _model("User", {"name": "c"})
        report = MigrationReport(model="User")
        assert detect_renames(old, new, report) == {}
        assert "ambiguous rename for 'c'" in report.warnings[0]

    def test_ambiguous_added_side(self):
        old = _model("User", {"name": "a"})
        new = _model("User", {"name": "b"}, {"name": "c"})
        report = MigrationReport(model="User")
        assert detect_renames(old, new, report) == {}
        assert report.warnings

    def test_explicit_rename_wins(self):
        old = _model("User", {"name": "a"}, {"name": "b"})
        new = _model("User", {"name": "c"})
        assert resolve_renames(old, new, {"b": "c"}) == {"b": "c"}

    def test_explicit_rename_unknown_field(self):
        new = _model("User", {"name": "name"}, {"name": "mail"})
        with pytest.raises(ValidationError, match="not a field"):
            resolve_renames(self.OLD, new, {"phone": "mail"})
        with pytest.raises(ValidationError, match="not in the new definition"):
            resolve_renames(self.OLD, new, {"email": "fax"})

    def test_explicit_rename_on_new_model(self):
        with pytest.raises(ValidationError, match="is new"):
            resolve_renames(None, self.OLD, {"email": "mail"})

    def test_rename_preserves_values(self, db, synth):
        migrate(db, synth, _model("User", {"name": "name"}, {"name": "email"}))
        db.execute("INSERT INTO records_User (id, name, email) VALUES ('u1', 'Ada', 'ada@x')")
        report = migrate(db, synth, _model("User", {"name": "name"}, {"name": "contact_email"}))
        assert report.renamed == {"email": "contact_email"}
        assert report.added_columns == []
        cols = table_columns(db, "records_User")
        assert "contact_email" in cols and "email" not in cols
        assert db.execute("SELECT contact_email FROM records_User").fetchone()[0] == "ada@x"
        assert registry.history(db, "User")[-1]['change'] == {
            'action': 'renameField', 'from': 'email', 'to': 'contact_email'}

    def test_ambiguous_rename_keeps_both_columns(self, db, synth):
        migrate(db, synth, _model("User", {"name": "a"}, {"name": "b"}))
        report = migrate(db, synth, _model("User", {"name": "c"}))
        assert report.renamed == {}
        assert report.added_columns == ["c"]
        assert {"a", "b", "c"} <= set(table_columns(db, "records_User"))

    def test_rename_moves_document_key(self, db, synth):
        migrate(db, synth, ModelDefinition("Doc"))
        _insert_docs(db, "records_Doc", [{"email": "a@x", "n": {"k": 1}}, {"other": 1}])
        assert rename_column(db, synth, "Doc", "email", "mail") is True
        docs = [json.loads(r[0]) for r in db.execute("SELECT data FROM records_Doc ORDER BY id")]
        assert docs[0] == {"mail": "a@x", "n": {"k": 1}}
        assert docs[1] == {"other": 1}

    def test_rename_nested_value_stays_json(self, db, synth):
        migrate(db, synth, ModelDefinition("Doc"))
        _insert_docs(db, "records_Doc", [{"tags": ["a", "b"], "flag": True}])
        rename_column(db, synth, "Doc", "tags", "labels")
        rename_column(db, synth, "Doc", "flag", "active")
        doc = json.loads(db.execute("SELECT data FROM records_Doc").fetchone()[0])
        assert doc == {"labels": ["a", "b"], "active": True}


class TestBackfill:

    def test_new_column_filled_from_document(self, db, synth):
        migrate(db, synth, _model("Note", {"name": "title"}, persistRawJson=True))
        db.execute("INSERT INTO records_Note (id, title, data) VALUES (?, ?, ?)",
                   ("n1", "hello", json.dumps({"title": "hello", "score": "7"})))
        report = migrate(db, synth, _model("Note", {"name": "title"},
                                           {"name": "score", "type": "Number"},
                                           persistRawJson=True))
        assert report.added_columns == ["score"]
        assert db.execute("SELECT score FROM records_Note").fetchone()[0] == 7.0


class TestRebuild:

    TYPED = _model("Doc", {"name": "title", "required": True},
                   {"name": "score", "type": "Number"},
                   {"name": "done", "type": "Boolean"},
                   {"name": "level", "type": "Number", "defaultValue": 1})

    def _seed(self, db, synth, docs):
        migrate(db, synth, ModelDefinition("Doc"))
        _insert_docs(db, "records_Doc", docs)
        db.execute("UPDATE records_Doc SET created_at = '2024-01-01T00:00:00+00:00'")

    def test_document_rows_move_to_columns(self, db, synth):
        self._seed(db, synth, [
            {"title": "a", "score": 7, "done": True},
            {"title": "b", "score": "3", "done": "false", "level": 4},
        ])
        report = migrate(db, synth, self.TYPED)
        assert report.rebuilt is True
        assert report.ok
        assert "data" not in table_columns(db, "records_Doc")
        rows = [tuple(r) for r in db.execute(
            "SELECT id, title, score, done, level, created_at FROM records_Doc ORDER BY id")]
        assert rows == [
            ("d1", "a", 7.0, 1, 1.0, "2024-01-01T00:00:00+00:00"),
            ("d2", "b", 3.0, 0, 4.0, "2024-01-01T00:00:00+00:00"),
        ]
        assert registry.history(db, "Doc")[-1]['operation'] == "rebuild"

    def test_rebuild_recreates_indexes(self, db, synth):
        self._seed(db, synth, [{"title": "a"}])
        typed = _model("Doc", {"name": "title"}, indexes=["title"])
        registry.register(db, typed)
        rebuild_typed(db, synth, "Doc", typed)
        assert "idx_records_Doc_title" in index_names(db, "records_Doc")

    def test_failure_keeps_document_table(self, db, synth):
        self._seed(db, synth, [{"title": "a"}, {"score": 2}])
        with pytest.raises(StorageError, match="document table kept"):
            with savepoint(db):
                migrate(db, synth, self.TYPED)
        assert "data" in table_columns(db, "records_Doc")
        assert db.execute("SELECT COUNT(*) FROM records_Doc").fetchone()[0] == 2
        assert registry.get(db, "Doc").fields == []

    def test_no_document_column_is_noop(self, db, synth):
        migrate(db, synth, self.TYPED)
        assert rebuild_typed(db, synth, "Doc", self.TYPED) == 0
