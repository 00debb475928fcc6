import asyncio

import pytest

from database import DocumentNotFound, MemoryDocumentStore, StoreError, WriteOp, split_path, user_path


def test_split_path_rejects_document_paths():
    assert split_path("users/u1/connections") == ["users", "u1", "connections"]
    with pytest.raises(ValueError):
        split_path("users/u1")
    with pytest.raises(ValueError):
        split_path("")


def test_subscribe_fires_immediately_then_on_change(store):
    seen = []

    async def scenario():
        await store.put_document("announcements", "a1", {"message": "hi"})
        sub = await store.subscribe("announcements", lambda snap: seen.append(sorted(snap.documents)))
        await store.put_document("announcements", "a2", {"message": "there"})
        await store.delete_document("announcements", "a1")
        sub.unsubscribe()
        await store.put_document("announcements", "a3", {"message": "unheard"})
        assert not store.has_subscribers("announcements")

    asyncio.run(scenario())
    assert seen == [["a1"], ["a1", "a2"], ["a2"]]


def test_feeds_are_scoped_by_path(store):
    seen = []

    async def scenario():
        await store.subscribe(user_path("alice", "connections"), lambda snap: seen.append(snap.path))
        await store.put_document(user_path("bob", "connections"), "x", {})

    asyncio.run(scenario())
    assert seen == ["users/alice/connections"]


def test_batch_is_all_or_nothing(store):
    async def scenario():
        with pytest.raises(DocumentNotFound):
            await store.apply_batch([
                WriteOp.put("profiles", "p1", {"name": "P"}),
                WriteOp.update("profiles", "missing", {"flagged": True}),
            ])
        return await store.get_documents("profiles")

    assert asyncio.run(scenario()) == {}


def test_update_merges_and_delete_is_idempotent(store):
    async def scenario():
        await store.put_document("profiles", "p1", {"name": "P", "flagged": False})
        await store.update_fields("profiles", "p1", {"flagged": True, "reason": "spam"})
        doc = await store.get_document("profiles", "p1")
        await store.delete_document("profiles", "p1")
        await store.delete_document("profiles", "p1")
        return doc, await store.get_documents("profiles")

    doc, remaining = asyncio.run(scenario())
    assert doc == {"name": "P", "flagged": True, "reason": "spam"}
    assert remaining == {}


def test_offline_store_rejects_writes():
    store = MemoryDocumentStore()
    store.offline = True

    async def scenario():
        with pytest.raises(StoreError):
            await store.put_document("profiles", "p1", {})

    asyncio.run(scenario())
    assert store.describe()["connected"] is False


def test_snapshots_are_copies(store):
    captured = []

    async def scenario():
        await store.put_document("profiles", "p1", {"interests": ["SaaS"]})
        await store.subscribe("profiles", captured.append)
        captured[0].documents["p1"]["interests"].append("Crypto")
        return await store.get_document("profiles", "p1")

    assert asyncio.run(scenario()) == {"interests": ["SaaS"]}
