"""
Live feed reconciliation.

Each feed mirrors one store collection. A snapshot replaces the feed's
confirmed records wholesale; mutations still in flight are then replayed on
top in the order they were issued, so the visible view never drops a change
the store has not yet acknowledged. A settled mutation's overlay is dropped at
the next snapshot of a feed it touches; from then on that snapshot decides.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from database import DocumentStore, Snapshot, Subscription, user_path
from mutations import Mutation, MutationLog

logger = logging.getLogger(__name__)

PROFILES = "profiles"
ANNOUNCEMENTS = "announcements"
FEEDBACKS = "feedbacks"
SENT = "sentRequests"
RECEIVED = "receivedRequests"
CONNECTIONS = "connections"

GLOBAL_FEEDS = (PROFILES, ANNOUNCEMENTS, FEEDBACKS)
LEDGER_FEEDS = (SENT, RECEIVED, CONNECTIONS)
NEWEST_FIRST = {ANNOUNCEMENTS, FEEDBACKS}


@dataclass
class FeedChange:
    feed: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.changed)


def diff_records(feed: str, old: Dict[str, dict], new: Dict[str, dict]) -> FeedChange:
    return FeedChange(
        feed,
        added=[k for k in new if k not in old],
        removed=[k for k in old if k not in new],
        changed=[k for k in new if k in old and new[k] != old[k]],
    )


class Feed:
    def __init__(self, name: str):
        self.name = name
        self.confirmed: Dict[str, dict] = {}
        self.view: Dict[str, dict] = {}
        self.subscription: Optional[Subscription] = None
        self.loaded = False

    def unsubscribe(self) -> None:
        if self.subscription is not None:
            self.subscription.unsubscribe()
            self.subscription = None


ChangeListener = Callable[[FeedChange], None]


class SyncEngine:
    def __init__(self, store: DocumentStore, mutations: MutationLog,
                 seed_profiles: Iterable[dict] = (), fallback_profiles: Iterable[dict] = ()):
        self.store = store
        self.seed = {str(p["id"]): dict(p) for p in seed_profiles}
        self.fallback = {str(p["id"]): dict(p) for p in fallback_profiles}
        self.feeds: Dict[str, Feed] = {name: Feed(name) for name in GLOBAL_FEEDS + LEDGER_FEEDS}
        self.user_id: Optional[str] = None
        self._overlays: List[Mutation] = []
        self._listeners: List[ChangeListener] = []
        mutations.on_issue(self.track)
        self.feeds[PROFILES].confirmed = dict(self.seed)
        self._rebuild(PROFILES)

    def on_change(self, fn: ChangeListener) -> None:
        self._listeners.append(fn)

    # --- subscriptions ----------------------------------------------------
    async def start(self) -> None:
        for name in GLOBAL_FEEDS:
            feed = self.feeds[name]
            if feed.subscription is None:
                feed.subscription = await self.store.subscribe(
                    name, self._snapshot_handler(name), self._error_handler(name))
        logger.info("Global feeds subscribed")

    async def attach_user(self, uid: str) -> None:
        if self.user_id == uid and all(self.feeds[n].subscription for n in LEDGER_FEEDS):
            return
        self.detach_user()
        self.user_id = uid
        for name in LEDGER_FEEDS:
            self.feeds[name].subscription = await self.store.subscribe(
                user_path(uid, name), self._snapshot_handler(name), self._error_handler(name))
        logger.info("Ledger feeds subscribed for %s", uid)

    def detach_user(self) -> None:
        """Drop the ledger view, including any preloaded from the cache."""
        for name in LEDGER_FEEDS:
            feed = self.feeds[name]
            feed.unsubscribe()
            feed.confirmed = {}
            feed.loaded = False
        self._overlays = [m for m in self._overlays if not m.feeds & set(LEDGER_FEEDS)]
        for name in LEDGER_FEEDS:
            self._rebuild(name)
        if self.user_id is not None:
            logger.info("Ledger feeds torn down for %s", self.user_id)
        self.user_id = None

    def close(self) -> None:
        """Stop every live feed; the local view is left as last seen."""
        for feed in self.feeds.values():
            feed.unsubscribe()

    # --- reconciliation ---------------------------------------------------
    def preload(self, name: str, records: Iterable[dict]) -> None:
        """Seed a feed from cached records until its live feed reports in."""
        feed = self.feeds[name]
        if feed.loaded:
            return
        confirmed = {str(r["id"]): dict(r) for r in records if isinstance(r, dict) and "id" in r}
        feed.confirmed = self._with_seed(confirmed) if name == PROFILES else confirmed
        self._rebuild(name)

    def track(self, mutation: Mutation) -> None:
        if mutation not in self._overlays:
            self._overlays.append(mutation)
        for name in mutation.feeds:
            self._rebuild(name)

    def _snapshot_handler(self, name: str):
        def handle(snapshot: Snapshot) -> None:
            self.apply_snapshot(name, snapshot)
        return handle

    def _error_handler(self, name: str):
        def handle(exc: Exception) -> None:
            logger.error("Error loading %s: %s", name, exc)
            if name == PROFILES:
                self.feeds[PROFILES].confirmed = {**self.seed, **self.fallback}
                self._rebuild(PROFILES)
        return handle

    def apply_snapshot(self, name: str, snapshot: Snapshot) -> FeedChange:
        feed = self.feeds[name]
        docs = {doc_id: {**data, "id": doc_id} for doc_id, data in snapshot.documents.items()}
        feed.confirmed = self._with_seed(docs) if name == PROFILES else docs
        feed.loaded = True
        expired = [m for m in self._overlays if m.settled and name in m.feeds]
        self._overlays = [m for m in self._overlays if m not in expired]
        change = self._rebuild(name)
        for other in {f for m in expired for f in m.feeds} - {name}:
            self._rebuild(other)
        return change

    def _with_seed(self, live: Dict[str, dict]) -> Dict[str, dict]:
        merged = dict(self.seed)
        for doc_id, record in live.items():
            if doc_id not in merged:
                merged[doc_id] = record
        if len(merged) == len(self.seed):
            for doc_id, record in self.fallback.items():
                merged.setdefault(doc_id, record)
        return merged

    def _rebuild(self, name: str) -> FeedChange:
        feed = self.feeds[name]
        view = {k: dict(v) for k, v in feed.confirmed.items()}
        for mutation in self._overlays:
            for effect in mutation.effects:
                if effect.feed != name:
                    continue
                if effect.record is None:
                    view.pop(effect.doc_id, None)
                elif effect.merge:
                    if effect.doc_id in view:
                        view[effect.doc_id] = {**view[effect.doc_id], **effect.record}
                else:
                    view[effect.doc_id] = {**effect.record, "id": effect.doc_id}
        change = diff_records(name, feed.view, view)
        feed.view = view
        if change:
            for fn in self._listeners:
                try:
                    fn(change)
                except Exception:
                    logger.exception("Change listener failed for %s", name)
        return change

    # --- reads ------------------------------------------------------------
    def get(self, name: str, doc_id: str) -> Optional[dict]:
        return self.feeds[name].view.get(str(doc_id))

    def contains(self, name: str, doc_id: str) -> bool:
        return str(doc_id) in self.feeds[name].view

    def records(self, name: str) -> List[Dict[str, Any]]:
        out = list(self.feeds[name].view.values())
        if name in NEWEST_FIRST:
            out.sort(key=lambda r: str(r.get("timestamp") or ""), reverse=True)
        return out
