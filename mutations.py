"""
Optimistic mutation commands.

A Mutation pairs the remote writes to persist (`ops`) with the local effects
to show at once (`effects`). The MutationLog runs the writes as a background
task and tracks each mutation through PENDING -> CONFIRMED | FAILED. Failures
are logged and kept for a retry; they never raise into the caller.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, WriteOp

logger = logging.getLogger(__name__)


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class Effect:
    """A local change to one record of a feed. `record=None` removes it."""
    feed: str
    doc_id: str
    record: Optional[Dict[str, Any]] = None
    merge: bool = False


class Mutation:
    def __init__(self, kind: str, target_id: str, ops: List[WriteOp], effects: List[Effect],
                 description: str = ""):
        self.id = uuid.uuid4().hex
        self.kind = kind
        self.target_id = str(target_id)
        self.ops = list(ops)
        self.effects = list(effects)
        self.description = description or f"{kind} {target_id}"
        self.status = MutationStatus.PENDING
        self.error: Optional[str] = None
        self.attempts = 0
        self.issued_at = datetime.now(timezone.utc).isoformat()
        self.task: Optional[asyncio.Task] = None

    @property
    def feeds(self) -> set:
        return {e.feed for e in self.effects}

    @property
    def settled(self) -> bool:
        return self.status != MutationStatus.PENDING

    async def wait(self) -> MutationStatus:
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.status

    def __repr__(self) -> str:
        return f"<Mutation {self.description!r} {self.status.value}>"


Listener = Callable[[Mutation], None]


class MutationLog:
    def __init__(self, store: DocumentStore):
        self.store = store
        self._mutations: List[Mutation] = []
        self._on_issue: List[Listener] = []

    def on_issue(self, fn: Listener) -> None:
        self._on_issue.append(fn)

    def issue(self, mutation: Mutation) -> Mutation:
        """Show the mutation locally now, persist it in the background."""
        mutation.status = MutationStatus.PENDING
        mutation.error = None
        mutation.attempts += 1
        if mutation not in self._mutations:
            self._mutations.append(mutation)
        for fn in self._on_issue:
            fn(mutation)
        loop = asyncio.get_running_loop()
        mutation.task = loop.create_task(self._run(mutation))
        return mutation

    async def _run(self, mutation: Mutation) -> None:
        try:
            if mutation.ops:
                await self.store.apply_batch(mutation.ops)
        except Exception as e:
            mutation.status = MutationStatus.FAILED
            mutation.error = str(e) or e.__class__.__name__
            logger.error("Error persisting %s: %s", mutation.description, mutation.error)
        else:
            mutation.status = MutationStatus.CONFIRMED
            logger.debug("Persisted %s", mutation.description)

    def retry(self, mutation: Mutation) -> Optional[Mutation]:
        if mutation.status != MutationStatus.FAILED:
            return None
        logger.info("Retrying %s (attempt %d)", mutation.description, mutation.attempts + 1)
        return self.issue(mutation)

    def pending(self) -> List[Mutation]:
        return [m for m in self._mutations if m.status == MutationStatus.PENDING]

    def failed(self) -> List[Mutation]:
        return [m for m in self._mutations if m.status == MutationStatus.FAILED]

    async def drain(self) -> None:
        """Wait for every in-flight mutation to settle."""
        while True:
            tasks = [m.task for m in self._mutations if m.task is not None and not m.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
