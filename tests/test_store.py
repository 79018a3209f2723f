"""Tests for schemata.store — the public surface, end to end on a file-backed store."""

import json

import pytest

from schemata import Store
from schemata.errors import (
    ConflictError, NotFoundError, StorageError, UnsupportedOperationError, ValidationError,
)
from schemata.types import Filter, ModelDefinition, QueryRequest

from conftest import AUTHOR, POST, USER, table_columns


class TestUserScenario:
    """Register, create, read back, filter, index, filter again."""

    def test_scenario(self, store):
        store.register_model({"name": "User", "fields": [
            {"name": "name", "type": "String"}, {"name": "age", "type": "Number"}]})
        created = store.create_record("User", {"name": "Ann", "age": 30})
        assert len(created.id) == 32

        fetched = store.get_record(created.id, "User")
        assert fetched.id == created.id
        assert fetched.data == {"name": "Ann", "age": 30}

        where = QueryRequest(where=[Filter("age", "eq", 30)])
        assert [r.id for r in store.get_records("User", where)] == [created.id]

        store.add_index("User", "age")
        assert [r.id for r in store.get_records("User", where)] == [created.id]


class TestRecords:

    def test_round_trip_typed(self, store):
        store.register_model(POST | {"fields": POST["fields"][:4]})
        data = {"title": "Hello", "category": "news", "views": 3, "published": True}
        rec = store.create_record("Post", data, id="p1")
        assert rec.id == "p1"
        assert store.get_record("p1", "Post").data == data

    def test_round_trip_document(self, store):
        data = {"title": "x", "tags": ["a", "b"], "meta": {"n": 1}, "score": 2.5}
        rec = store.create_record("Loose", data)
        assert store.get_record(rec.id, "Loose").data == data

    def test_id_from_data(self, store):
        rec = store.create_record("Loose", {"id": "given", "v": 1})
        assert rec.id == "given"
        assert "id" not in rec.data

    def test_timestamps(self, store):
        rec = store.create_record("Loose", {"v": 1})
        assert rec.created_at == rec.updated_at
        assert rec.created_at.tzinfo is not None

    def test_get_record_searches_all_models(self, blog):
        assert blog.get_record("grace").data["name"] == "Grace"
        assert blog.get_record("p3").data["title"] == "Machines"
        assert blog.get_record("nobody") is None

    def test_missing_required(self, store):
        store.register_model(USER)
        with pytest.raises(ValidationError, match="User.name is required"):
            store.create_record("User", {"age": 3})

    def test_uncoercible_value(self, store):
        store.register_model(USER)
        with pytest.raises(ValidationError):
            store.create_record("User", {"name": "Ann", "age": "old"})
        assert store.count_records("User") == 0

    def test_default_applied(self, blog):
        rec = blog.create_record("Post", {"title": "Quiet"})
        assert rec.data["views"] == 0

    def test_undeclared_key_on_typed_model_ignored(self, store):
        store.register_model(USER)
        rec = store.create_record("User", {"name": "Ann", "nickname": "A"})
        assert "nickname" not in rec.data

    def test_persist_raw_json_keeps_everything(self, store):
        store.register_model(USER | {"metadata": {"persistRawJson": True}})
        rec = store.create_record("User", {"name": "Ann", "age": 30, "nickname": "A"})
        assert rec.data == {"name": "Ann", "age": 30, "nickname": "A"}
        raw_doc = store.get_records("User")[0]
        assert raw_doc.data["nickname"] == "A"

    def test_registered_model_without_table(self, store):
        store.register_model(USER | {"metadata": {"persistAsTable": False}})
        assert store.get_records("User") == []
        assert store.count_records("User") == 0
        with pytest.raises(UnsupportedOperationError):
            store.create_record("User", {"name": "Ann"})

    def test_unknown_model(self, store):
        with pytest.raises(NotFoundError):
            store.get_records("Ghost")
        with pytest.raises(NotFoundError):
            store.count_records("Ghost")

    def test_unsafe_model_name(self, store):
        with pytest.raises(ValidationError):
            store.create_record("User; DROP TABLE schema_manager", {"a": 1})
        with pytest.raises(ValidationError):
            store.get_records("sqlite_master")

    def test_non_dict_data(self, store):
        with pytest.raises(ValidationError):
            store.create_record("Loose", ["not", "a", "dict"])


class TestUpdateAndUpsert:

    def test_update_replaces_fields(self, blog):
        before = blog.get_record("p1", "Post")
        rec = blog.update_record("Post", "p1", {"title": "Engines II", "views": 121})
        assert rec.data["title"] == "Engines II"
        assert rec.data["views"] == 121
        assert rec.data["category"] is None
        assert rec.created_at == before.created_at
        assert rec.updated_at >= before.updated_at

    def test_update_missing(self, blog):
        with pytest.raises(NotFoundError):
            blog.update_record("Post", "nope", {"title": "x"})

    def test_update_document(self, store):
        rec = store.create_record("Loose", {"a": 1, "b": 2})
        updated = store.update_record("Loose", rec.id, {"a": 5})
        assert updated.data == {"a": 5}

    def test_upsert_creates_then_updates(self, store):
        store.register_model(USER)
        first = store.upsert_record("User", {"name": "Ann"}, id="u1")
        second = store.upsert_record("User", {"id": "u1", "name": "Anne", "age": 31})
        assert first.id == second.id == "u1"
        assert second.data == {"name": "Anne", "age": 31}
        assert store.count_records("User") == 1

    def test_upsert_without_id_creates(self, store):
        store.upsert_record("Loose", {"v": 1})
        store.upsert_record("Loose", {"v": 1})
        assert store.count_records("Loose") == 2


class TestDelete:

    def test_delete_record(self, blog):
        assert blog.delete_record("Post", "p5") is True
        assert blog.delete_record("Post", "p5") is False
        assert blog.get_record("p5", "Post") is None

    def test_delete_from_missing_table(self, store):
        assert store.delete_record("Ghost", "x") is False
        assert store.delete_records("Ghost", [Filter("a", "eq", 1)]) == 0

    def test_delete_by_filter(self, blog):
        deleted = blog.delete_records("Post", [Filter("category", "eq", "tech"),
                                               Filter("views", "lt", 100)])
        assert deleted == 2
        assert sorted(r.id for r in blog.get_records("Post")) == ["p1", "p3", "p5"]

    def test_delete_by_filter_or(self, blog):
        deleted = blog.delete_records("Post", [Filter("category", "eq", "misc"),
                                               Filter("views", "gt", 200)], "or")
        assert deleted == 2

    def test_delete_all(self, blog):
        assert blog.delete_records("Post") == 5
        assert blog.count_records("Post") == 0

    def test_cascade(self, blog):
        blog.delete_record("Author", "ada")
        assert sorted(r.id for r in blog.get_records("Post")) == ["p3", "p4", "p5"]


class TestForeignKeys:

    def test_dangling_reference_rejected(self, blog):
        with pytest.raises(StorageError, match="FOREIGN KEY"):
            blog.create_record("Post", {"title": "x", "author_id": "nobody"})

    def test_disabled(self, tmp_path):
        with Store(tmp_path / "nofk.db", foreign_keys=False) as s:
            s.register_model(AUTHOR)
            s.register_model(POST)
            s.create_record("Post", {"title": "x", "author_id": "nobody"})
            assert s.count_records("Post") == 1


class TestAutoIncrement:

    TICKET = {"name": "Ticket", "fields": [
        {"name": "id", "type": "Number", "autoIncrement": True},
        {"name": "subject", "type": "String"},
    ]}

    def test_k_creates_strictly_increasing(self, store):
        store.register_model(self.TICKET)
        ids = [int(store.create_record("Ticket", {"subject": f"s{i}"}).id) for i in range(5)]
        assert ids == [1, 2, 3, 4, 5]

    def test_secondary_counter_field(self, store):
        store.register_model({"name": "Invoice", "fields": [
            {"name": "number", "type": "Number", "autoIncrement": True},
            {"name": "total", "type": "Number"},
        ]})
        a = store.create_record("Invoice", {"total": 10})
        b = store.create_record("Invoice", {"total": 20})
        assert (a.data["number"], b.data["number"]) == (1, 2)
        assert a.id == "1"
        updated = store.update_record("Invoice", a.id, {"total": 11})
        assert updated.data["number"] == 1

    def test_failed_create_does_not_consume_counter(self, store):
        store.register_model(self.TICKET | {"fields": self.TICKET["fields"] + [
            {"name": "owner", "type": "String", "required": True}]})
        with pytest.raises(ValidationError):
            store.create_record("Ticket", {"subject": "x"})
        rec = store.create_record("Ticket", {"subject": "y", "owner": "me"})
        assert rec.id == "1"


class TestTransactions:

    def test_commit(self, store):
        store.register_model(USER)
        store.begin()
        store.create_record("User", {"name": "Ann"}, id="u1")
        store.create_record("User", {"name": "Bob"}, id="u2")
        store.commit()
        assert store.count_records("User") == 2

    def test_rollback(self, store):
        store.register_model(USER)
        store.begin()
        store.create_record("User", {"name": "Ann"}, id="u1")
        assert store.count_records("User") == 1
        store.rollback()
        assert store.count_records("User") == 0

    def test_nested_begin(self, store):
        store.begin()
        try:
            with pytest.raises(ConflictError):
                store.begin()
        finally:
            store.rollback()

    def test_commit_and_rollback_without_transaction(self, store):
        store.commit()
        store.rollback()
        assert store.in_transaction is False

    def test_context_manager_rolls_back(self, store):
        store.register_model(USER)
        with pytest.raises(ValidationError):
            with store.transaction():
                store.create_record("User", {"name": "Ann"}, id="u1")
                store.create_record("User", {"age": 2})
        assert store.count_records("User") == 0
        assert store.in_transaction is False

    def test_failed_call_inside_transaction_keeps_earlier_work(self, store):
        store.register_model(USER)
        with store.transaction():
            store.create_record("User", {"name": "Ann"}, id="u1")
            with pytest.raises(ValidationError):
                store.create_record("User", {"age": 2})
        assert store.count_records("User") == 1

    def test_schema_change_rolled_back(self, store):
        store.begin()
        store.register_model(USER)
        store.rollback()
        assert store.model_exists("User") is False
        assert store.columns("User") == {}
        store.create_record("User", {"name": "x"})
        assert "data" in store.columns("User")


class TestModels:

    def test_register_report(self, store):
        report = store.register_model(USER)
        assert report.created is True
        assert store.model_exists("User")
        assert store.list_models() == ["User"]
        assert store.get_model("User").module == "accounts"
        assert store.get_managed_schema("User")["metadata"]["fields"][0]["name"] == "name"

    def test_definition_object_accepted(self, store):
        store.register_model(ModelDefinition.from_dict(USER))
        assert store.model_exists("User")

    def test_bad_definition(self, store):
        with pytest.raises(ValidationError):
            store.register_model("User")
        with pytest.raises(ValidationError):
            store.register_model({"name": "User", "fields": [{"name": "x", "type": "Blob"}]})
        assert store.list_models() == []

    def test_explicit_rename_through_register(self, store, raw):
        store.register_model({"name": "Acct", "fields": [{"name": "a"}, {"name": "b"}]})
        store.create_record("Acct", {"a": "1", "b": "2"}, id="x")
        report = store.register_model({"name": "Acct", "fields": [{"name": "a"}, {"name": "c"}]},
                                      renames={"b": "c"})
        assert report.renamed == {"b": "c"}
        assert store.get_record("x", "Acct").data == {"a": "1", "c": "2"}
        assert "b" not in table_columns(raw, "records_Acct")

    def test_document_to_typed_through_register(self, store):
        store.create_record("Doc", {"title": "a", "n": 1}, id="d1")
        store.create_record("Doc", {"title": "b", "n": 2}, id="d2")
        report = store.register_model({"name": "Doc", "fields": [
            {"name": "title"}, {"name": "n", "type": "Number"}]})
        assert report.rebuilt is True
        assert "data" not in store.columns("Doc")
        got = store.get_records("Doc", QueryRequest(order_by="id"))
        assert [(r.id, r.data) for r in got] == [
            ("d1", {"title": "a", "n": 1}), ("d2", {"title": "b", "n": 2})]

    def test_rebuild_of_referenced_model_refused_inside_transaction(self, store):
        store.register_model({"name": "Author", "fields": [{"name": "name"}],
                              "metadata": {"persistRawJson": True}})
        store.register_model({"name": "Post", "fields": [
            {"name": "title"},
            {"name": "author_id", "type": "Relation",
             "relation": {"model": "Author", "onDelete": "cascade"}}]})
        store.create_record("Author", {"name": "Ada"}, id="ada")
        store.create_record("Post", {"title": "Engines", "author_id": "ada"}, id="p1")
        typed = {"name": "Author", "fields": [{"name": "name"}]}

        with pytest.raises(ConflictError, match="referenced by records_Post"):
            with store.transaction():
                store.register_model(typed)
        assert "data" in store.columns("Author")
        assert [r.id for r in store.get_records("Post")] == ["p1"]

        assert store.register_model(typed).rebuilt is True
        assert "data" not in store.columns("Author")
        assert [r.id for r in store.get_records("Post")] == ["p1"]
        assert store.get_record("ada", "Author").data == {"name": "Ada"}

    def test_rebuild_without_dependents_inside_transaction(self, store):
        store.create_record("Doc", {"title": "a"}, id="d1")
        with store.transaction():
            report = store.register_model({"name": "Doc", "fields": [{"name": "title"}]})
        assert report.rebuilt is True
        assert [r.id for r in store.get_records("Doc")] == ["d1"]

    def test_history_records_everything(self, store):
        store.register_model(USER)
        store.add_index("User", "age")
        store.drop_model_table("User")
        ops = [h["operation"] for h in store.history("User")]
        assert ops == ["register", "createTable", "addIndex", "drop"]
        assert json.dumps(store.history())


class TestDrop:

    def test_drop_model_table(self, blog):
        assert blog.drop_model_table("Post") is True
        assert blog.model_exists("Post") is False
        assert blog.columns("Post") == {}
        assert blog.drop_model_table("Post") is False

    def test_drop_all_orders_dependents_first(self, blog):
        blog.register_model({"name": "Comment", "fields": [
            {"name": "post_id", "type": "Relation", "relation": "Post"}]})
        order = blog.drop_all_model_tables()
        assert order == ["Comment", "Post", "Author"]
        assert blog.list_models() == []

    def test_drop_all_leaves_unregistered_targets(self, store):
        store.create_record("Ghost", {"name": "boo"}, id="g1")
        store.register_model({"name": "Post", "fields": [
            {"name": "ghost_id", "type": "Relation", "relation": "Ghost"}]})
        assert store.drop_all_model_tables() == ["Post"]
        assert store.get_record("g1", "Ghost").data == {"name": "boo"}
        assert [h["operation"] for h in store.history("Ghost")] == []

    def test_drop_clears_counter(self, store):
        store.register_model(TestAutoIncrement.TICKET)
        store.create_record("Ticket", {"subject": "a"})
        store.drop_model_table("Ticket")
        store.register_model(TestAutoIncrement.TICKET)
        assert store.create_record("Ticket", {"subject": "b"}).id == "1"


class TestMemoryStore:

    def test_in_memory(self, mem_store):
        mem_store.register_model(USER)
        mem_store.create_record("User", {"name": "Ann"}, id="u1")
        assert mem_store.get_record("u1", "User").data["name"] == "Ann"

    def test_closed(self, mem_store):
        mem_store.close()
        with pytest.raises(StorageError):
            mem_store.list_models()

    def test_context_manager(self):
        with Store(":memory:") as s:
            s.create_record("Loose", {"a": 1})
            assert s.count_records("Loose") == 1
