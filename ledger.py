"""
Connection ledger: the request/accept state machine between two attendees.

Every logical edge is stored as two mirrored documents, one under each
participant:

    request U -> P   users/U/sentRequests/P      (snapshot of P + timestamp)
                     users/P/receivedRequests/U  (snapshot of U + timestamp)
    connection U, P  users/U/connections/P       (snapshot of P + connectedAt)
                     users/P/connections/U       (snapshot of U + connectedAt)

The plan_* functions return the writes for both mirrors; they are persisted as
one atomic batch. ConnectionLedger applies each transition to the local view
first and persists it in the background.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from database import WriteOp, user_path
from mutations import Effect, Mutation, MutationLog
from sync_engine import CONNECTIONS, RECEIVED, SENT, SyncEngine

logger = logging.getLogger(__name__)

_EDGE_KEYS = ("timestamp", "connectedAt")


class ConnectionState(str, Enum):
    NONE = "none"
    REQUEST_SENT = "request_sent"
    REQUEST_RECEIVED = "request_received"
    CONNECTED = "connected"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def profile_snapshot(profile: dict) -> dict:
    """A profile as embedded in an edge document, minus edge bookkeeping."""
    return {k: v for k, v in profile.items() if k not in _EDGE_KEYS}


def state_of(connected: bool, received: bool, sent: bool) -> ConnectionState:
    if connected:
        return ConnectionState.CONNECTED
    if received:
        return ConnectionState.REQUEST_RECEIVED
    if sent:
        return ConnectionState.REQUEST_SENT
    return ConnectionState.NONE


# Write plans
def plan_send(user: dict, target: dict, ts: str) -> List[WriteOp]:
    uid, pid = str(user["id"]), str(target["id"])
    return [
        WriteOp.put(user_path(uid, SENT), pid, {**profile_snapshot(target), "timestamp": ts}),
        WriteOp.put(user_path(pid, RECEIVED), uid, {**profile_snapshot(user), "timestamp": ts}),
    ]


def plan_accept(user: dict, sender: dict, ts: str) -> List[WriteOp]:
    uid, pid = str(user["id"]), str(sender["id"])
    return [
        WriteOp.put(user_path(uid, CONNECTIONS), pid, {**profile_snapshot(sender), "connectedAt": ts}),
        WriteOp.put(user_path(pid, CONNECTIONS), uid, {**profile_snapshot(user), "connectedAt": ts}),
        WriteOp.delete(user_path(uid, RECEIVED), pid),
        WriteOp.delete(user_path(pid, SENT), uid),
        # a crossing request U -> P is settled by the same connection
        WriteOp.delete(user_path(uid, SENT), pid),
        WriteOp.delete(user_path(pid, RECEIVED), uid),
    ]


def plan_decline(user: dict, sender: dict) -> List[WriteOp]:
    uid, pid = str(user["id"]), str(sender["id"])
    return [
        WriteOp.delete(user_path(uid, RECEIVED), pid),
        WriteOp.delete(user_path(pid, SENT), uid),
    ]


def plan_cancel(user: dict, target: dict) -> List[WriteOp]:
    uid, pid = str(user["id"]), str(target["id"])
    return [
        WriteOp.delete(user_path(uid, SENT), pid),
        WriteOp.delete(user_path(pid, RECEIVED), uid),
    ]


class ConnectionLedger:
    """
    Local side of the state machine for the signed-in attendee.

    Guards read the local view, which may lag the store. A transition whose
    guard fails is a logged no-op and returns None; otherwise the Mutation is
    returned already applied locally and still persisting.
    """

    def __init__(self, sync: SyncEngine, mutations: MutationLog, current_user: Callable[[], Optional[dict]]):
        self.sync = sync
        self.mutations = mutations
        self.current_user = current_user

    def state(self, profile_id: str) -> ConnectionState:
        pid = str(profile_id)
        return state_of(
            self.sync.contains(CONNECTIONS, pid),
            self.sync.contains(RECEIVED, pid),
            self.sync.contains(SENT, pid),
        )

    def _parties(self, op: str, profile: dict):
        user = self.current_user()
        if not user or not profile or "id" not in profile:
            logger.debug("%s ignored: no signed-in user or target", op)
            return None
        if str(profile["id"]) == str(user["id"]):
            logger.debug("%s ignored: target is the current user", op)
            return None
        return user, profile

    def send_request(self, profile: dict) -> Optional[Mutation]:
        parties = self._parties("send_request", profile)
        if parties is None:
            return None
        user, target = parties
        pid = str(target["id"])
        if self.state(pid) != ConnectionState.NONE:
            logger.debug("send_request to %s ignored: state is %s", pid, self.state(pid).value)
            return None
        ts = now_iso()
        mutation = Mutation(
            "send_request", pid, plan_send(user, target, ts),
            [Effect(SENT, pid, {**profile_snapshot(target), "timestamp": ts})],
            description=f"request {user['id']} -> {pid}",
        )
        return self.mutations.issue(mutation)

    def accept_request(self, profile: dict) -> Optional[Mutation]:
        parties = self._parties("accept_request", profile)
        if parties is None:
            return None
        user, sender = parties
        pid = str(sender["id"])
        if not self.sync.contains(RECEIVED, pid):
            logger.debug("accept_request from %s ignored: no incoming request", pid)
            return None
        ts = now_iso()
        mutation = Mutation(
            "accept_request", pid, plan_accept(user, sender, ts),
            [
                Effect(RECEIVED, pid),
                Effect(SENT, pid),
                Effect(CONNECTIONS, pid, {**profile_snapshot(sender), "connectedAt": ts}),
            ],
            description=f"accept {pid} -> {user['id']}",
        )
        return self.mutations.issue(mutation)

    def decline_request(self, profile: dict) -> Optional[Mutation]:
        parties = self._parties("decline_request", profile)
        if parties is None:
            return None
        user, sender = parties
        pid = str(sender["id"])
        if not self.sync.contains(RECEIVED, pid):
            logger.debug("decline_request from %s ignored: no incoming request", pid)
            return None
        mutation = Mutation(
            "decline_request", pid, plan_decline(user, sender), [Effect(RECEIVED, pid)],
            description=f"decline {pid} -> {user['id']}",
        )
        return self.mutations.issue(mutation)

    def cancel_request(self, profile: dict) -> Optional[Mutation]:
        parties = self._parties("cancel_request", profile)
        if parties is None:
            return None
        user, target = parties
        pid = str(target["id"])
        if not self.sync.contains(SENT, pid):
            logger.debug("cancel_request to %s ignored: no outgoing request", pid)
            return None
        mutation = Mutation(
            "cancel_request", pid, plan_cancel(user, target), [Effect(SENT, pid)],
            description=f"cancel {user['id']} -> {pid}",
        )
        return self.mutations.issue(mutation)
