"""Tests for the record lifecycle engine."""

import asyncio
import logging

import pytest

from doccms import CMS, CMSOptions, Defer, HookContext, HookPoint, HookRegistry, SchemaConfig
from doccms.core.pure import is_pure
from doccms.exceptions import (
    DocumentCountError,
    DocumentNotFoundError,
    EmptyRecoveryError,
    HookException,
    HookResultError,
    SchemaNotFoundError,
    UnsafeFilterError,
)
from doccms.hooks import FindOptions
from doccms.persistence import MemoryAdapter
from doccms.persistence.sql import SQLAlchemyAdapter


class Interrupt(HookException):
    pass


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry():
    return HookRegistry()


@pytest.fixture
def adapter():
    return MemoryAdapter()


@pytest.fixture(params=["memory", "sqlite"])
def any_adapter(request, tmp_path):
    """Engine behaviour must not depend on the store."""
    if request.param == "memory":
        store = MemoryAdapter()
    else:
        store = SQLAlchemyAdapter(f"sqlite:///{tmp_path / 'doccms.db'}")
    yield store
    store.close()


@pytest.fixture
def make_cms(registry, adapter):
    """Build a CMS over books and chapters once hooks are registered."""

    def build(books: SchemaConfig | None = None, chapters: SchemaConfig | None = None):
        schemas = {
            "books": books or SchemaConfig(fields=["title", "author", "year"]),
            "chapters": chapters or SchemaConfig(fields=["bookId", "title"]),
        }
        return CMS(CMSOptions(schemas=schemas), adapter, registry)

    return build


# =============================================================================
# Create
# =============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_before_create_sets_id(self, registry, adapter, make_cms):
        registry.register(
            "books", HookPoint.BEFORE_CREATE, lambda p: {**p.data, "_id": "book_123"}
        )
        cms = make_cms()

        book = await cms.create("books", {"title": "X"})

        assert book == {"_id": "book_123", "title": "X"}
        assert adapter.find_one("books", "book_123") == {"_id": "book_123", "title": "X"}

    @pytest.mark.asyncio
    async def test_id_generated_when_missing(self, make_cms):
        cms = make_cms()
        book = await cms.create("books", {"title": "X"})
        assert isinstance(book["_id"], str) and book["_id"]

    @pytest.mark.asyncio
    async def test_config_hooks_run_before_declarative_hooks(self, registry, make_cms):
        calls = []

        def tracker(name):
            def fn(params):
                calls.append(name)

            return fn

        registry.register("books", HookPoint.BEFORE_CREATE, tracker("declared-1"))
        registry.register("books", HookPoint.BEFORE_CREATE, tracker("declared-2"))
        cms = make_cms(
            books=SchemaConfig(
                hooks={HookPoint.BEFORE_CREATE: [tracker("config-1"), tracker("config-2")]}
            )
        )

        await cms.create("books", {"title": "X"})

        assert calls == ["config-1", "config-2", "declared-1", "declared-2"]

    @pytest.mark.asyncio
    async def test_pure_data_unaffected_by_hook_mutation(self, registry, make_cms):
        snapshots = []

        def mutate(params):
            params.data["title"] = "mutated"
            return {**params.data, "extra": True}

        def inspect_snapshot(params):
            snapshots.append(params.pure_data)

        registry.register("books", HookPoint.BEFORE_CREATE, mutate)
        registry.register("books", HookPoint.BEFORE_CREATE, inspect_snapshot)
        cms = make_cms()

        book = await cms.create("books", {"title": "X"})

        assert book["title"] == "mutated"
        assert snapshots == [{"title": "X"}]
        assert is_pure(snapshots[0])

    @pytest.mark.asyncio
    async def test_caller_data_is_not_mutated(self, registry, make_cms):
        registry.register("books", HookPoint.BEFORE_CREATE, lambda p: p.data.update(x=1))
        cms = make_cms()
        data = {"title": "X"}
        await cms.create("books", data)
        assert data == {"title": "X"}

    @pytest.mark.asyncio
    async def test_after_create_transforms_result(self, registry, make_cms):
        seen = []

        def decorate(params):
            seen.append((params.data, params.pure_document))
            return {**params.document, "decorated": True}

        registry.register("books", HookPoint.AFTER_CREATE, decorate)
        cms = make_cms()

        book = await cms.create("books", {"_id": "b1", "title": "X"})

        assert book == {"_id": "b1", "title": "X", "decorated": True}
        assert seen == [({"_id": "b1", "title": "X"}, {"_id": "b1", "title": "X"})]
        assert await cms.find_by_id("books", "b1") == {"_id": "b1", "title": "X"}

    @pytest.mark.asyncio
    async def test_list_create_processes_each_record(self, registry, make_cms):
        registry.register("books", HookPoint.BEFORE_CREATE, lambda p: {**p.data, "seen": True})
        cms = make_cms()

        books = await cms.create("books", [{"_id": "a"}, {"_id": "b"}])

        assert books == [{"_id": "a", "seen": True}, {"_id": "b", "seen": True}]

    @pytest.mark.asyncio
    async def test_unknown_schema(self, make_cms):
        cms = make_cms()
        with pytest.raises(SchemaNotFoundError):
            await cms.create("authors", {"name": "A"})

    @pytest.mark.asyncio
    async def test_insert_count_mismatch_is_fatal(self, registry):
        class LossyAdapter(MemoryAdapter):
            def insert(self, collection, documents, transaction):
                return []

        errors = []
        registry.register("books", HookPoint.AFTER_ERROR, lambda p: errors.append(p.error))
        cms = CMS(CMSOptions(schemas={"books": SchemaConfig()}), LossyAdapter(), registry)

        with pytest.raises(DocumentCountError):
            await cms.create("books", {"title": "X"})
        assert len(errors) == 1


# =============================================================================
# Deferred calls and transactions
# =============================================================================


class TestDeferredCalls:
    @pytest.mark.asyncio
    async def test_run_in_registration_order_before_commit(self, registry, adapter, make_cms):
        events = []

        def before(params):
            async def first():
                events.append(("first", adapter.find_one("books", "b1")))

            params.defer(first)

        def after(params):
            async def second():
                events.append(("second", adapter.find_one("books", "b1")))

            params.defer(second)

        registry.register("books", HookPoint.BEFORE_CREATE, before)
        registry.register("books", HookPoint.AFTER_CREATE, after)
        cms = make_cms()

        await cms.create("books", {"_id": "b1"})

        # Outside the transaction the document is not visible until commit.
        assert events == [("first", None), ("second", None)]
        assert adapter.find_one("books", "b1") == {"_id": "b1"}

    @pytest.mark.asyncio
    async def test_not_run_when_post_hook_fails(self, registry, adapter, make_cms):
        ran = []
        errors = []

        def before(params):
            async def deferred():
                ran.append(True)

            params.defer(deferred)

        def broken(params):
            raise RuntimeError("after hook broke")

        registry.register("books", HookPoint.BEFORE_CREATE, before)
        registry.register("books", HookPoint.AFTER_CREATE, broken)
        registry.register("books", HookPoint.AFTER_ERROR, lambda p: errors.append(p.path))
        cms = make_cms()

        with pytest.raises(RuntimeError, match="after hook broke"):
            await cms.create("books", {"_id": "b1"})

        assert ran == []
        assert errors == ["create"]
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_failing_deferred_call_aborts(self, registry, adapter, make_cms):
        def before(params):
            async def deferred():
                raise RuntimeError("deferred broke")

            params.defer(deferred)

        registry.register("books", HookPoint.BEFORE_CREATE, before)
        cms = make_cms()

        with pytest.raises(RuntimeError, match="deferred broke"):
            await cms.create("books", {"_id": "b1"})
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_concurrent_operations_keep_separate_state(self, registry, make_cms):
        flushed = {}

        async def slow(params):
            request = params.context.request
            await asyncio.sleep(0.02 if request == "first" else 0)

            async def deferred():
                flushed.setdefault(request, []).append(params.data["_id"])

            params.defer(deferred)

        registry.register("books", HookPoint.BEFORE_CREATE, slow)
        cms = make_cms()

        await asyncio.gather(
            cms.create("books", {"_id": "a"}, HookContext(request="first")),
            cms.create("books", {"_id": "b"}, HookContext(request="second")),
        )

        assert flushed == {"first": ["a"], "second": ["b"]}


# =============================================================================
# Defer results
# =============================================================================


class TestDefer:
    @pytest.mark.asyncio
    async def test_defer_skips_persistence_and_post_hooks(self, registry, adapter, make_cms):
        after_calls = []

        async def hold(params):
            await params.raw_db.collection("pending").insert_one({"_id": "p1", "data": params.data})
            return Defer({"_id": "p1", "status": "pending"})

        registry.register("books", HookPoint.BEFORE_CREATE, hold)
        registry.register("books", HookPoint.AFTER_CREATE, lambda p: after_calls.append(1))
        cms = make_cms()

        result = await cms.create("books", {"title": "X"})

        assert result == {"_id": "p1", "status": "pending"}
        assert after_calls == []
        assert adapter.find("books") == []
        assert adapter.find_one("pending", "p1") == {"_id": "p1", "data": {"title": "X"}}

    @pytest.mark.asyncio
    async def test_defer_from_post_hook_is_rejected(self, registry, make_cms):
        registry.register("books", HookPoint.AFTER_CREATE, lambda p: Defer({}))
        cms = make_cms()
        with pytest.raises(HookResultError):
            await cms.create("books", {"title": "X"})


# =============================================================================
# Exception recovery
# =============================================================================


class TestExceptionRecovery:
    @pytest.mark.asyncio
    async def test_uncaught_hook_exception_prevents_persistence(
        self, registry, adapter, make_cms
    ):
        def interrupt(params):
            raise Interrupt("stop")

        errors = []
        registry.register("books", HookPoint.BEFORE_CREATE, interrupt)
        registry.register("books", HookPoint.AFTER_ERROR, lambda p: errors.append(p.error))
        cms = make_cms()

        with pytest.raises(Interrupt):
            await cms.create("books", {"_id": "b1"})

        assert adapter.find_one("books", "b1") is None
        assert errors == []

    @pytest.mark.asyncio
    async def test_cleared_exception_returns_replacement(self, registry, adapter, make_cms):
        seen = []

        def interrupt(params):
            raise Interrupt("stop")

        def recover(params):
            seen.append((params.name, params.data.pure_data))
            if isinstance(params.exception, Interrupt):
                params.exception_actions.clear()
                params.return_actions.set({"recovered": True})

        registry.register("books", HookPoint.BEFORE_CREATE, interrupt)
        registry.register("books", HookPoint.CATCH_EXCEPTION, recover)
        cms = make_cms()

        result = await cms.create("books", {"_id": "b1"})

        assert result == {"recovered": True}
        assert seen == [(HookPoint.BEFORE_CREATE, {"_id": "b1"})]
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_unrelated_exception_hook_leaves_exception(self, registry, make_cms):
        class OtherInterrupt(HookException):
            pass

        def interrupt(params):
            raise Interrupt("stop")

        def other_plugin(params):
            if isinstance(params.exception, OtherInterrupt):
                params.exception_actions.clear()

        registry.register("books", HookPoint.BEFORE_CREATE, interrupt)
        registry.register("books", HookPoint.CATCH_EXCEPTION, other_plugin)
        cms = make_cms()

        with pytest.raises(Interrupt):
            await cms.create("books", {"_id": "b1"})

    @pytest.mark.asyncio
    async def test_recovery_hook_may_commit(self, registry, adapter, make_cms):
        def interrupt(params):
            raise Interrupt("stop")

        def recover(params):
            params.exception_actions.clear()
            params.return_actions.set(params.data.document)
            params.raw_db.commit()

        registry.register("books", HookPoint.AFTER_CREATE, interrupt)
        registry.register("books", HookPoint.CATCH_EXCEPTION, recover)
        cms = make_cms()

        result = await cms.create("books", {"_id": "b1"})

        assert result == {"_id": "b1"}
        assert adapter.find_one("books", "b1") == {"_id": "b1"}

    @pytest.mark.asyncio
    async def test_open_transaction_rolled_back_after_recovery(
        self, registry, adapter, make_cms, caplog
    ):
        ran = []

        def before(params):
            async def deferred():
                ran.append(True)

            params.defer(deferred)

        def interrupt(params):
            raise Interrupt("stop")

        def recover(params):
            params.exception_actions.clear()
            params.return_actions.set("recovered")

        registry.register("books", HookPoint.BEFORE_CREATE, before)
        registry.register("books", HookPoint.AFTER_CREATE, interrupt)
        registry.register("books", HookPoint.CATCH_EXCEPTION, recover)
        cms = make_cms()

        with caplog.at_level(logging.WARNING, logger="doccms.engine.state"):
            assert await cms.create("books", {"_id": "b1"}) == "recovered"

        assert ran == []
        assert adapter.find_one("books", "b1") is None
        assert "rolling back" in caplog.text

    @pytest.mark.asyncio
    async def test_cleared_without_value_raises(self, registry, make_cms):
        def interrupt(params):
            raise Interrupt("stop")

        registry.register("books", HookPoint.BEFORE_CREATE, interrupt)
        registry.register(
            "books", HookPoint.CATCH_EXCEPTION, lambda p: p.exception_actions.clear()
        )
        cms = make_cms()

        with pytest.raises(EmptyRecoveryError):
            await cms.create("books", {"_id": "b1"})

    @pytest.mark.asyncio
    async def test_exception_hooks_receive_point_name(self, registry, make_cms):
        names = []

        def interrupt(params):
            raise Interrupt("stop")

        def recover(params):
            names.append(params.name)
            params.exception_actions.clear()
            params.return_actions.set(None)

        registry.register("books", HookPoint.BEFORE_DELETE, interrupt)
        registry.register("books", HookPoint.CATCH_EXCEPTION, recover)
        cms = make_cms()
        await cms.create("books", {"_id": "b1"})

        assert await cms.delete_by_id("books", "b1") is None
        assert names == [HookPoint.BEFORE_DELETE]


# =============================================================================
# Update
# =============================================================================


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_hook_params(self, registry, adapter, make_cms):
        before_seen = []
        after_seen = []

        def before(params):
            before_seen.append(
                (params.data, params.original_document, params.target_document)
            )
            return {**params.data, "edited": True}

        def after(params):
            after_seen.append(
                (params.original_document, params.current_document, params.pure_current_document)
            )

        registry.register("books", HookPoint.BEFORE_UPDATE, before)
        registry.register("books", HookPoint.AFTER_UPDATE, after)
        cms = make_cms()
        await cms.create("books", {"_id": "b1", "title": "X", "year": 2000})

        result = await cms.update_by_id("books", "b1", {"title": "Y"})

        expected = {"_id": "b1", "title": "Y", "year": 2000, "edited": True}
        assert result == expected
        assert before_seen == [
            (
                {"title": "Y"},
                {"_id": "b1", "title": "X", "year": 2000},
                {"_id": "b1", "title": "Y", "year": 2000},
            )
        ]
        assert after_seen == [({"_id": "b1", "title": "X", "year": 2000}, expected, expected)]
        assert adapter.find_one("books", "b1") == expected

    @pytest.mark.asyncio
    async def test_update_missing_id(self, make_cms):
        cms = make_cms()
        with pytest.raises(DocumentNotFoundError):
            await cms.update_by_id("books", "missing", {"title": "Y"})

    @pytest.mark.asyncio
    async def test_update_by_filter(self, make_cms):
        cms = make_cms()
        await cms.create("books", [{"_id": "a", "year": 1}, {"_id": "b", "year": 2}])

        updated = await cms.update("books", {"year": {"$gte": 2}}, {"flag": True})

        assert updated == [{"_id": "b", "year": 2, "flag": True}]
        assert await cms.find_by_id("books", "a") == {"_id": "a", "year": 1}


# =============================================================================
# Delete
# =============================================================================


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_by_id_runs_hooks(self, registry, adapter, make_cms):
        seen = []
        registry.register(
            "books", HookPoint.BEFORE_DELETE, lambda p: seen.append(("before", p.pure_document))
        )
        registry.register(
            "books", HookPoint.AFTER_DELETE, lambda p: seen.append(("after", p.document))
        )
        cms = make_cms()
        await cms.create("books", {"_id": "b1", "title": "X"})

        deleted = await cms.delete_by_id("books", "b1")

        assert deleted == {"_id": "b1", "title": "X"}
        assert seen == [("before", deleted), ("after", deleted)]
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_id(self, make_cms):
        cms = make_cms()
        with pytest.raises(DocumentNotFoundError):
            await cms.delete_by_id("books", "missing")

    @pytest.mark.asyncio
    async def test_empty_filter_rejected(self, registry, make_cms):
        errors = []
        registry.register("books", HookPoint.AFTER_ERROR, lambda p: errors.append(p.error))
        cms = make_cms()
        await cms.create("books", {"_id": "b1"})

        with pytest.raises(UnsafeFilterError):
            await cms.delete("books", {})

        assert len(errors) == 1
        assert await cms.find_by_id("books", "b1") == {"_id": "b1"}

    @pytest.mark.asyncio
    async def test_unrecognized_filter_rejected(self, make_cms):
        cms = make_cms()
        await cms.create("books", {"_id": "b1", "color": "red"})
        with pytest.raises(UnsafeFilterError):
            await cms.delete("books", {"color": "red"})

    @pytest.mark.asyncio
    async def test_filter_with_recognized_field_passes(self, make_cms):
        cms = make_cms()
        await cms.create("books", [{"_id": "a", "author": "Ann"}, {"_id": "b", "author": "Bob"}])

        deleted = await cms.delete("books", {"author": "Ann", "color": "red"})

        assert deleted == []
        deleted = await cms.delete("books", {"author": "Ann"})
        assert deleted == [{"_id": "a", "author": "Ann"}]
        assert [b["_id"] for b in await cms.find("books")] == ["b"]

    @pytest.mark.asyncio
    async def test_id_is_always_recognized(self, make_cms):
        cms = make_cms()
        await cms.create("books", {"_id": "a"})
        assert await cms.delete("books", {"_id": {"$in": ["a"]}}) == [{"_id": "a"}]


# =============================================================================
# Query
# =============================================================================


class TestQuery:
    @pytest.mark.asyncio
    async def test_after_query_transforms_each_document(self, registry, make_cms):
        registry.register(
            "books", HookPoint.AFTER_QUERY, lambda p: {**p.document, "read": True}
        )
        cms = make_cms()
        await cms.create("books", [{"_id": "a", "year": 2}, {"_id": "b", "year": 1}])

        found = await cms.find("books", FindOptions(sort={"year": "asc"}))

        assert found == [{"_id": "b", "year": 1, "read": True}, {"_id": "a", "year": 2, "read": True}]

    @pytest.mark.asyncio
    async def test_find_accepts_mapping_options(self, make_cms):
        cms = make_cms()
        await cms.create("books", [{"_id": str(i), "n": i} for i in range(5)])

        found = await cms.find("books", {"skip": 1, "limit": 2, "sort": {"n": "desc"}})

        assert [d["n"] for d in found] == [3, 2]

    @pytest.mark.asyncio
    async def test_find_by_id_missing_runs_no_hooks(self, registry, make_cms):
        calls = []
        registry.register("books", HookPoint.AFTER_QUERY, lambda p: calls.append(1))
        cms = make_cms()

        assert await cms.find_by_id("books", "missing") is None
        assert calls == []


# =============================================================================
# Nested operations through db
# =============================================================================


class TestNestedOperations:
    @pytest.mark.asyncio
    async def test_nested_create_runs_target_schema_hooks(self, registry, adapter, make_cms):
        async def add_chapter(params):
            await params.db.create("chapters", {"bookId": params.document["_id"], "title": "1"})

        registry.register("books", HookPoint.AFTER_CREATE, add_chapter)
        registry.register(
            "chapters", HookPoint.BEFORE_CREATE, lambda p: {**p.data, "_id": "ch_1"}
        )
        cms = make_cms()

        await cms.create("books", {"_id": "b1"})

        assert adapter.find_one("chapters", "ch_1") == {"_id": "ch_1", "bookId": "b1", "title": "1"}

    @pytest.mark.asyncio
    async def test_nested_writes_roll_back_with_parent(self, registry, adapter, make_cms):
        async def add_chapter(params):
            await params.db.create("chapters", {"_id": "ch_1", "bookId": "b1"})

        def broken(params):
            raise RuntimeError("later hook broke")

        registry.register("books", HookPoint.AFTER_CREATE, add_chapter)
        registry.register("books", HookPoint.AFTER_CREATE, broken)
        cms = make_cms()

        with pytest.raises(RuntimeError):
            await cms.create("books", {"_id": "b1"})

        assert adapter.find_one("chapters", "ch_1") is None
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_nested_deferred_calls_flush_before_nested_call_returns(
        self, registry, make_cms
    ):
        events = []

        def chapter_hook(params):
            async def deferred():
                events.append("chapter deferred")

            params.defer(deferred)

        async def add_chapter(params):
            await params.db.create("chapters", {"bookId": "b1"})
            events.append("nested returned")

        registry.register("chapters", HookPoint.BEFORE_CREATE, chapter_hook)
        registry.register("books", HookPoint.AFTER_CREATE, add_chapter)
        cms = make_cms()

        await cms.create("books", {"_id": "b1"})

        assert events == ["chapter deferred", "nested returned"]

    @pytest.mark.asyncio
    async def test_nested_operation_shares_context(self, registry, make_cms):
        seen = []
        registry.register(
            "chapters", HookPoint.BEFORE_CREATE, lambda p: seen.append(p.context.request)
        )

        async def add_chapter(params):
            await params.db.create("chapters", {"bookId": "b1"})

        registry.register("books", HookPoint.AFTER_CREATE, add_chapter)
        cms = make_cms()

        await cms.create("books", {"_id": "b1"}, HookContext(request="req-1"))

        assert seen == ["req-1"]

    @pytest.mark.asyncio
    async def test_nested_reads_see_uncommitted_writes(self, registry, make_cms):
        found = []

        async def lookup(params):
            found.append(await params.db.find_one("books", params.document["_id"]))

        registry.register("books", HookPoint.AFTER_CREATE, lookup)
        cms = make_cms()

        await cms.create("books", {"_id": "b1"})

        assert found == [{"_id": "b1"}]


# =============================================================================
# Batch records
# =============================================================================


def _cms_over(store, registry):
    return CMS(CMSOptions(schemas={"books": SchemaConfig(fields=["title"])}), store, registry)


def _recover_interrupts(params):
    if isinstance(params.exception, Interrupt):
        params.exception_actions.clear()
        params.return_actions.set({"recovered": True})


class TestBatchRecords:
    @pytest.mark.asyncio
    async def test_recovered_record_matches_single_create(self, registry, any_adapter):
        ran = []

        def after(params):
            async def mark():
                ran.append(params.document["_id"])

            params.defer(mark)
            raise Interrupt("stop")

        registry.register("books", HookPoint.AFTER_CREATE, after)
        registry.register("books", HookPoint.CATCH_EXCEPTION, _recover_interrupts)
        cms = _cms_over(any_adapter, registry)

        single = await cms.create("books", {"_id": "b1"})
        batch = await cms.create("books", [{"_id": "b1"}])

        assert single == {"recovered": True}
        assert batch == [{"recovered": True}]
        assert await cms.find("books") == []
        assert ran == []

    @pytest.mark.asyncio
    async def test_only_recovered_record_is_discarded(self, registry, any_adapter):
        ran = []

        def after(params):
            id = params.document["_id"]

            async def mark():
                ran.append(id)

            params.defer(mark)
            if id == "b":
                raise Interrupt("stop")

        registry.register("books", HookPoint.AFTER_CREATE, after)
        registry.register("books", HookPoint.CATCH_EXCEPTION, _recover_interrupts)
        cms = _cms_over(any_adapter, registry)

        results = await cms.create("books", [{"_id": "a"}, {"_id": "b"}, {"_id": "c"}])

        assert results == [{"_id": "a"}, {"recovered": True}, {"_id": "c"}]
        assert sorted(doc["_id"] for doc in await cms.find("books")) == ["a", "c"]
        assert ran == ["a", "c"]

    @pytest.mark.asyncio
    async def test_failing_record_rolls_back_whole_batch(self, registry, any_adapter):
        def after(params):
            if params.document["_id"] == "b":
                raise RuntimeError("broke")

        registry.register("books", HookPoint.AFTER_CREATE, after)
        cms = _cms_over(any_adapter, registry)

        with pytest.raises(RuntimeError, match="broke"):
            await cms.create("books", [{"_id": "a"}, {"_id": "b"}])
        assert await cms.find("books") == []


# =============================================================================
# Deferred call recovery
# =============================================================================


class TestDeferredCallRecovery:
    @pytest.mark.asyncio
    async def test_interrupt_from_deferred_call_is_recovered(self, registry, adapter, make_cms):
        seen = []
        later = []

        def after(params):
            async def publish():
                raise Interrupt("not yet")

            async def notify():
                later.append(True)

            params.defer(publish)
            params.defer(notify)

        def recover(params):
            seen.append((params.name, params.data))
            params.exception_actions.clear()
            params.return_actions.set({"published": False})

        registry.register("books", HookPoint.AFTER_CREATE, after)
        registry.register("books", HookPoint.CATCH_EXCEPTION, recover)
        cms = make_cms()

        result = await cms.create("books", {"_id": "b1"})

        assert result == {"published": False}
        assert seen == [(HookPoint.AFTER_CREATE, {"_id": "b1"})]
        assert later == []
        assert adapter.find_one("books", "b1") is None

    @pytest.mark.asyncio
    async def test_uncleared_interrupt_from_deferred_call_propagates(
        self, registry, adapter, make_cms
    ):
        errors = []

        def before(params):
            async def publish():
                raise Interrupt("not yet")

            params.defer(publish)

        registry.register("books", HookPoint.BEFORE_CREATE, before)
        registry.register("books", HookPoint.AFTER_ERROR, lambda p: errors.append(p.error))
        cms = make_cms()

        with pytest.raises(Interrupt):
            await cms.create("books", {"_id": "b1"})

        assert errors == []
        assert adapter.find_one("books", "b1") is None


# =============================================================================
# Concurrent writers
# =============================================================================


class TestConcurrentWriters:
    @pytest.mark.asyncio
    async def test_overlapping_sqlite_creates_both_commit(self, registry, tmp_path):
        async def slow(params):
            await asyncio.sleep(0.05)

        registry.register("books", HookPoint.AFTER_CREATE, slow)
        cms = _cms_over(SQLAlchemyAdapter(f"sqlite:///{tmp_path / 'doccms.db'}"), registry)

        try:
            await asyncio.gather(
                cms.create("books", {"_id": "a", "title": "A"}),
                cms.create("books", {"_id": "b", "title": "B"}),
            )
            titles = sorted(doc["title"] for doc in await cms.find("books"))
            assert titles == ["A", "B"]
        finally:
            cms.close()

    @pytest.mark.asyncio
    async def test_reads_do_not_wait_for_open_writer(self, registry, any_adapter):
        started = asyncio.Event()
        finish = asyncio.Event()

        async def hold(params):
            started.set()
            await finish.wait()

        registry.register("books", HookPoint.AFTER_CREATE, hold)
        cms = _cms_over(any_adapter, registry)

        pending = asyncio.create_task(cms.create("books", {"_id": "b1", "title": "A"}))
        await started.wait()
        assert await asyncio.wait_for(cms.find("books"), timeout=1) == []

        finish.set()
        await pending
        assert await cms.find("books") == [{"_id": "b1", "title": "A"}]
