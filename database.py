"""
Document store for STRATEGIA Connect

Documents live in collections addressed by slash paths:

    profiles/{id}
    announcements/{id}
    feedbacks/{id}
    sessions/{token}
    users/{uid}/sentRequests/{id}
    users/{uid}/receivedRequests/{id}
    users/{uid}/connections/{id}

Every store supports one-shot reads, upserts, partial updates, idempotent
deletes, atomic batches, and live subscriptions that deliver the full document
set of a collection immediately and again after every change.

Two backends:
- MemoryDocumentStore: in-process, used for development and tests. It can
  simulate write latency and an unreachable remote.
- MongoDocumentStore: MongoDB via pymongo, selected when DATABASE_URL is set.
"""

import asyncio
import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "strategia")
DATABASE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

PUT = "put"
UPDATE = "update"
DELETE = "delete"


class StoreError(Exception):
    """A write or read could not be completed by the store."""


class DocumentNotFound(StoreError):
    pass


def split_path(path: str) -> List[str]:
    parts = [p for p in (path or "").split("/") if p]
    if not parts or len(parts) % 2 == 0:
        raise ValueError(f"Not a collection path: {path!r}")
    return parts


def user_path(uid: str, collection: str) -> str:
    return f"users/{uid}/{collection}"


@dataclass(frozen=True)
class WriteOp:
    kind: str
    path: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def put(cls, path: str, doc_id: str, data: Dict[str, Any]) -> "WriteOp":
        return cls(PUT, path, str(doc_id), dict(data))

    @classmethod
    def update(cls, path: str, doc_id: str, data: Dict[str, Any]) -> "WriteOp":
        return cls(UPDATE, path, str(doc_id), dict(data))

    @classmethod
    def delete(cls, path: str, doc_id: str) -> "WriteOp":
        return cls(DELETE, path, str(doc_id))


@dataclass
class Snapshot:
    path: str
    documents: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.documents)


SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    def __init__(self, store: "DocumentStore", path: str, on_snapshot: SnapshotCallback,
                 on_error: Optional[ErrorCallback] = None):
        self.store = store
        self.path = path
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def deliver(self, snapshot: Snapshot) -> None:
        if not self.active:
            return
        try:
            self.on_snapshot(snapshot)
        except Exception:
            logger.exception("Snapshot listener for %s failed", self.path)

    def fail(self, exc: Exception) -> None:
        if not self.active:
            return
        if self.on_error is None:
            logger.error("Feed %s errored: %s", self.path, exc)
            return
        try:
            self.on_error(exc)
        except Exception:
            logger.exception("Error listener for %s failed", self.path)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.store._detach(self)


class DocumentStore:
    """Base class: fan-out of snapshots to subscribers, single-op helpers."""

    backend = "abstract"

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    # --- to implement -------------------------------------------------
    async def get_documents(self, path: str) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    async def apply_batch(self, ops: Iterable[WriteOp]) -> None:
        """Apply every op or none of them, then notify affected feeds."""
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        raise NotImplementedError

    # --- single-document helpers ----------------------------------------
    async def get_document(self, path: str, doc_id: str) -> Optional[Dict[str, Any]]:
        docs = await self.get_documents(path)
        return docs.get(str(doc_id))

    async def put_document(self, path: str, doc_id: str, record: Dict[str, Any]) -> None:
        await self.apply_batch([WriteOp.put(path, doc_id, record)])

    async def update_fields(self, path: str, doc_id: str, partial: Dict[str, Any]) -> None:
        await self.apply_batch([WriteOp.update(path, doc_id, partial)])

    async def delete_document(self, path: str, doc_id: str) -> None:
        await self.apply_batch([WriteOp.delete(path, doc_id)])

    # --- live feeds ------------------------------------------------------
    async def subscribe(self, path: str, on_snapshot: SnapshotCallback,
                        on_error: Optional[ErrorCallback] = None) -> Subscription:
        split_path(path)
        sub = Subscription(self, path, on_snapshot, on_error)
        self._subscribers.setdefault(path, []).append(sub)
        try:
            docs = await self.get_documents(path)
        except StoreError as e:
            sub.fail(e)
        else:
            sub.deliver(Snapshot(path, docs))
        return sub

    def _detach(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.path, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.path, None)

    def has_subscribers(self, path: str) -> bool:
        return bool(self._subscribers.get(path))

    async def _publish(self, paths: Iterable[str]) -> None:
        for path in dict.fromkeys(paths):
            subs = list(self._subscribers.get(path, []))
            if not subs:
                continue
            try:
                docs = await self.get_documents(path)
            except StoreError as e:
                for sub in subs:
                    sub.fail(e)
                continue
            for sub in subs:
                sub.deliver(Snapshot(path, copy.deepcopy(docs)))


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store.

    `latency` delays every write by that many seconds; `offline` makes every
    write raise StoreError, as an unreachable remote would.
    """

    backend = "memory"

    def __init__(self, latency: float = 0.0):
        super().__init__()
        self.latency = latency
        self.offline = False
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.writes = 0

    async def get_documents(self, path: str) -> Dict[str, Dict[str, Any]]:
        split_path(path)
        return copy.deepcopy(self._collections.get(path, {}))

    async def apply_batch(self, ops: Iterable[WriteOp]) -> None:
        ops = list(ops)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise StoreError("Document store unavailable")
        for op in ops:
            split_path(op.path)
            if op.kind == UPDATE and op.doc_id not in self._collections.get(op.path, {}):
                raise DocumentNotFound(f"{op.path}/{op.doc_id}")
            if op.kind not in (PUT, UPDATE, DELETE):
                raise StoreError(f"Unknown write kind: {op.kind}")

        for op in ops:
            coll = self._collections.setdefault(op.path, {})
            if op.kind == PUT:
                coll[op.doc_id] = copy.deepcopy(op.data)
            elif op.kind == UPDATE:
                coll[op.doc_id].update(copy.deepcopy(op.data))
            else:
                coll.pop(op.doc_id, None)
            self.writes += 1
        await self._publish(op.path for op in ops)

    def describe(self) -> Dict[str, Any]:
        return {
            "backend": self.backend,
            "connected": not self.offline,
            "collections": sorted(p for p, docs in self._collections.items() if docs)[:10],
        }


class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed store.

    A collection path maps to the MongoDB collection named by its last segment;
    the parent path is kept in `_scope` so that e.g. every user's
    `connections` share one collection. Snapshots are pushed to subscribers of
    this process after each write made through it.
    """

    backend = "mongodb"

    def __init__(self, db, client: Optional[MongoClient] = None, transactions: bool = DATABASE_TRANSACTIONS):
        super().__init__()
        self.db = db
        self.client = client
        self.transactions = transactions and client is not None

    @staticmethod
    def _locate(path: str) -> Tuple[str, str]:
        parts = split_path(path)
        return parts[-1], "/".join(parts[:-1])

    def _read_sync(self, path: str) -> Dict[str, Dict[str, Any]]:
        name, scope = self._locate(path)
        out = {}
        for doc in self.db[name].find({"_scope": scope}):
            doc_id = doc.pop("_doc_id")
            doc.pop("_id", None)
            doc.pop("_scope", None)
            out[doc_id] = doc
        return out

    def _write_sync(self, ops: List[WriteOp], session=None) -> None:
        for op in ops:
            name, scope = self._locate(op.path)
            key = f"{op.path}/{op.doc_id}"
            coll = self.db[name]
            if op.kind == PUT:
                doc = {**op.data, "_id": key, "_scope": scope, "_doc_id": op.doc_id}
                coll.replace_one({"_id": key}, doc, upsert=True, session=session)
            elif op.kind == UPDATE:
                res = coll.update_one({"_id": key}, {"$set": op.data}, session=session)
                if res.matched_count == 0:
                    raise DocumentNotFound(key)
            elif op.kind == DELETE:
                coll.delete_one({"_id": key}, session=session)
            else:
                raise StoreError(f"Unknown write kind: {op.kind}")

    def _apply_sync(self, ops: List[WriteOp]) -> None:
        if not self.transactions:
            self._write_sync(ops)
            return
        with self.client.start_session() as session:
            session.with_transaction(lambda s: self._write_sync(ops, s))

    async def get_documents(self, path: str) -> Dict[str, Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._read_sync, path)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(str(e)) from e

    async def apply_batch(self, ops: Iterable[WriteOp]) -> None:
        ops = list(ops)
        try:
            await asyncio.to_thread(self._apply_sync, ops)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(str(e)) from e
        await self._publish(op.path for op in ops)

    def describe(self) -> Dict[str, Any]:
        report = {"backend": self.backend, "connected": False, "collections": []}
        try:
            report["collections"] = self.db.list_collection_names()[:10]
            report["connected"] = True
        except Exception as e:
            report["error"] = str(e)[:50]
        return report


_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """Process-wide store: MongoDB when DATABASE_URL is set, memory otherwise."""
    global _store
    if _store is None:
        if DATABASE_URL:
            client = MongoClient(DATABASE_URL)
            _store = MongoDocumentStore(client[DATABASE_NAME], client)
            logger.info("Using MongoDB document store %s", DATABASE_NAME)
        else:
            _store = MemoryDocumentStore()
            logger.warning("DATABASE_URL not set, using in-memory document store")
    return _store
