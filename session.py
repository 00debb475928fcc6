"""
Session controller: one attendee's view of the network.

Owns the current view, the signed-in profile, the admin flag and the ledger
sets, persists them to the local cache on every change, and routes every
entry point to the verifier, the connection ledger or a moderation write.
Every entry point returns at once; outcomes are logged, never raised.
"""

import asyncio
import hmac
import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from cache import LocalCache
from database import DocumentStore, WriteOp, get_store
from ledger import ConnectionLedger, ConnectionState, now_iso
from mutations import Effect, Mutation, MutationLog
from schemas import (
    AllowlistEntry, Announcement, AttendeeProfile, Feedback, FeedbackForm,
    ProfileUpdate, SignupForm, parse_profile,
)
from sync_engine import (
    ANNOUNCEMENTS, CONNECTIONS, FEEDBACKS, LEDGER_FEEDS, PROFILES, RECEIVED, SENT,
    FeedChange, SyncEngine,
)
from verifier import (
    DATA_DIR, DEFAULT_COUNTRY_CODE, IdentityVerifier, VerificationResult, find_by_email,
    with_country_code,
)

logger = logging.getLogger(__name__)

ADMIN_CODE = os.getenv("ADMIN_CODE", "")
VERIFY_DELAY_SECONDS = float(os.getenv("VERIFY_DELAY_SECONDS", "0"))
SEED_PROFILES_PATH = os.getenv("SEED_PROFILES_PATH", os.path.join(DATA_DIR, "seed_profiles.json"))

VIEWS = ("landing", "signup", "login", "adminLogin", "admin", "app", "privacy", "terms", "about")
SESSION_KEYS = ("user", "view") + LEDGER_FEEDS
SHARED_FEEDS = (FEEDBACKS, ANNOUNCEMENTS)

SIGNED_IN = "signed_in"
NO_ACCOUNT = "no-account"
FAILED = "failed"


def load_seed_profiles(path: str = SEED_PROFILES_PATH) -> Tuple[List[dict], List[dict]]:
    """Return (core team, fallback samples) from the seed file, validated."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    core = [parse_profile(p).model_dump() for p in data.get("core", [])]
    samples = [parse_profile(p).model_dump() for p in data.get("samples", [])]
    return core, samples


@dataclass
class SignInResult:
    status: str
    user: Optional[dict] = None
    reason: Optional[str] = None


ProfileRef = Union[str, dict]


class SessionController:
    def __init__(self, store: DocumentStore, verifier: IdentityVerifier, cache: Optional[LocalCache] = None,
                 seed_profiles: Iterable[dict] = (), fallback_profiles: Iterable[dict] = (),
                 admin_code: str = ADMIN_CODE, verify_delay: float = VERIFY_DELAY_SECONDS,
                 country_code: str = DEFAULT_COUNTRY_CODE):
        self.store = store
        self.verifier = verifier
        self.cache = cache if cache is not None else LocalCache(path=None)
        self.admin_code = admin_code
        self.verify_delay = verify_delay
        self.country_code = country_code

        self.mutations = MutationLog(store)
        self.sync = SyncEngine(store, self.mutations, seed_profiles, fallback_profiles)
        self.ledger = ConnectionLedger(self.sync, self.mutations, lambda: self.user)

        self.view: str = self.cache.get("view", "landing")
        self.user: Optional[dict] = self.cache.get("user")
        self.is_admin: bool = bool(self.cache.get("isAdmin", False))
        for name in SHARED_FEEDS:
            self.sync.preload(name, self.cache.get(name, []))
        if self.user:
            for name in LEDGER_FEEDS:
                self.sync.preload(name, self.cache.get(name, []))
        self.sync.on_change(self._on_feed_change)

    @classmethod
    def from_environment(cls, store: Optional[DocumentStore] = None, cache: Optional[LocalCache] = None):
        core, samples = load_seed_profiles()
        core_entries = [AllowlistEntry(email=p["email"], phone=p["phone"], name=p["name"]) for p in core]
        return cls(
            store or get_store(),
            IdentityVerifier.from_file(extra=core_entries),
            cache or LocalCache(),
            seed_profiles=core,
            fallback_profiles=samples,
        )

    async def start(self) -> None:
        await self.sync.start()
        if self.user:
            await self.sync.attach_user(str(self.user["id"]))

    async def close(self) -> None:
        await self.mutations.drain()
        self.sync.close()

    # --- state & cache ------------------------------------------------------
    def _on_feed_change(self, change: FeedChange) -> None:
        if change.feed in SHARED_FEEDS:
            self.cache.set(change.feed, self.sync.records(change.feed))
        elif change.feed in LEDGER_FEEDS and self.user:
            self.cache.set(change.feed, self.sync.records(change.feed))
        elif change.feed == PROFILES and self.user:
            uid = str(self.user["id"])
            if uid in change.changed:
                self._set_user(self.sync.get(PROFILES, uid))

    def _set_user(self, user: Optional[dict]) -> None:
        self.user = user
        self.cache.set("user", user)

    def navigate(self, view: str) -> str:
        if view not in VIEWS:
            logger.warning("Unknown view %r", view)
            return self.view
        if view == "admin" and not self.is_admin:
            view = "adminLogin"
        if view == "app" and not self.user:
            view = "login"
        self.view = view
        self.cache.set("view", view)
        return view

    # --- identity -------------------------------------------------------------
    async def verify(self, email: str, phone: str) -> VerificationResult:
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        return self.verifier.verify(email, with_country_code(phone, self.country_code))

    def _profile_by_email(self, email: str) -> Optional[dict]:
        return find_by_email(self.sync.records(PROFILES), email)

    async def sign_up(self, form: Union[SignupForm, dict]) -> Optional[dict]:
        try:
            form = form if isinstance(form, SignupForm) else SignupForm.model_validate(form)
        except ValidationError as e:
            logger.info("Signup rejected: %s", e.errors()[0].get("msg"))
            return None
        result = await self.verify(form.email, form.phone)
        if not result.verified:
            logger.info("Signup verification failed for %s: %s", form.email, result.reason)
            return None
        if self._profile_by_email(form.email):
            logger.info("Account exists for %s, redirecting to login", form.email)
            self.navigate("login")
            return None

        profile = AttendeeProfile.from_signup(
            form, result.entry.name, with_country_code(form.phone, self.country_code), now_iso(),
        ).model_dump()
        pid = profile["id"]
        self.mutations.issue(Mutation(
            "create_profile", pid, [WriteOp.put(PROFILES, pid, profile)],
            [Effect(PROFILES, pid, profile)], description=f"create profile {pid}",
        ))
        self._set_user(profile)
        await self.sync.attach_user(pid)
        self.navigate("app")
        return profile

    async def sign_in(self, email: str, phone: str) -> SignInResult:
        result = await self.verify(email, phone)
        if not result.verified:
            return SignInResult(FAILED, reason=result.reason)
        existing = self._profile_by_email(email)
        if existing is None:
            return SignInResult(NO_ACCOUNT, reason="No profile yet")
        self._set_user(existing)
        await self.sync.attach_user(str(existing["id"]))
        self.navigate("app")
        return SignInResult(SIGNED_IN, user=existing)

    def sign_out(self) -> None:
        self.sync.detach_user()
        self.user = None
        self.view = "landing"
        # feedback and announcements stay cached for the admin
        self.cache.remove(*SESSION_KEYS)

    def admin_login(self, code: str) -> bool:
        if not self.admin_code or not hmac.compare_digest(str(code), self.admin_code):
            return False
        self.is_admin = True
        self.cache.set("isAdmin", True)
        self.navigate("admin")
        return True

    # --- connection ledger --------------------------------------------------
    def _resolve(self, ref: ProfileRef) -> Optional[dict]:
        if isinstance(ref, dict):
            return ref
        for name in (PROFILES, RECEIVED, SENT, CONNECTIONS):
            record = self.sync.get(name, str(ref))
            if record is not None:
                return record
        return None

    def send_request(self, profile: ProfileRef) -> Optional[Mutation]:
        return self.ledger.send_request(self._resolve(profile))

    def accept_request(self, profile: ProfileRef) -> Optional[Mutation]:
        return self.ledger.accept_request(self._resolve(profile))

    def decline_request(self, profile: ProfileRef) -> Optional[Mutation]:
        return self.ledger.decline_request(self._resolve(profile))

    def cancel_request(self, profile: ProfileRef) -> Optional[Mutation]:
        return self.ledger.cancel_request(self._resolve(profile))

    def connection_state(self, profile_id: str) -> ConnectionState:
        return self.ledger.state(profile_id)

    def is_connected(self, profile_id: str) -> bool:
        return self.sync.contains(CONNECTIONS, profile_id)

    def is_pending(self, profile_id: str) -> bool:
        return self.sync.contains(SENT, profile_id)

    def has_incoming_request(self, profile_id: str) -> bool:
        return self.sync.contains(RECEIVED, profile_id)

    def mutual_interests(self, profile: dict) -> List[str]:
        if not self.user or not profile:
            return []
        theirs = set(profile.get("interests") or [])
        return [i for i in self.user.get("interests") or [] if i in theirs]

    # --- profiles & moderation ------------------------------------------------
    def update_profile(self, **fields) -> Optional[Mutation]:
        if not self.user:
            return None
        try:
            changes = ProfileUpdate(**fields).model_dump(exclude_none=True)
        except ValidationError as e:
            logger.info("Profile update rejected: %s", e.errors()[0].get("msg"))
            return None
        if not changes:
            return None
        uid = str(self.user["id"])
        self._set_user({**self.user, **changes})
        return self.mutations.issue(Mutation(
            "update_profile", uid, [WriteOp.update(PROFILES, uid, changes)],
            [Effect(PROFILES, uid, changes, merge=True)], description=f"update profile {uid}",
        ))

    def flag(self, profile_id: str, reason: str) -> Optional[Mutation]:
        if not self.user and not self.is_admin:
            logger.info("flag %s ignored: not signed in", profile_id)
            return None
        changes = {"flagged": True, "reason": reason}
        return self.mutations.issue(Mutation(
            "flag", profile_id, [WriteOp.update(PROFILES, profile_id, changes)],
            [Effect(PROFILES, str(profile_id), changes, merge=True)],
            description=f"flag {profile_id}",
        ))

    def unflag(self, profile_id: str) -> Optional[Mutation]:
        if not self.is_admin:
            logger.info("unflag %s ignored: admin only", profile_id)
            return None
        changes = {"flagged": False, "reason": None}
        return self.mutations.issue(Mutation(
            "unflag", profile_id, [WriteOp.update(PROFILES, profile_id, changes)],
            [Effect(PROFILES, str(profile_id), changes, merge=True)],
            description=f"unflag {profile_id}",
        ))

    def remove(self, profile_id: str) -> Optional[Mutation]:
        own = self.user is not None and str(self.user["id"]) == str(profile_id)
        if not (self.is_admin or own):
            logger.info("remove %s ignored: admin or owner only", profile_id)
            return None
        mutation = self.mutations.issue(Mutation(
            "remove", profile_id, [WriteOp.delete(PROFILES, profile_id)],
            [Effect(PROFILES, str(profile_id))], description=f"remove {profile_id}",
        ))
        if own:
            self.sign_out()
        return mutation

    # --- feedback & announcements -------------------------------------------
    def has_submitted_feedback(self) -> bool:
        if not self.user:
            return False
        feedbacks = self.sync.records(FEEDBACKS)
        return find_by_email(feedbacks, self.user.get("email", ""), key="userEmail") is not None

    def submit_feedback(self, form: Union[FeedbackForm, dict]) -> Optional[Mutation]:
        if not self.user or self.has_submitted_feedback():
            return None
        try:
            form = form if isinstance(form, FeedbackForm) else FeedbackForm.model_validate(form)
        except ValidationError as e:
            logger.info("Feedback rejected: %s", e.errors()[0].get("msg"))
            return None
        record = Feedback.from_form(form, self.user["email"], self.user["name"], now_iso()).model_dump()
        return self.mutations.issue(Mutation(
            "submit_feedback", record["id"], [WriteOp.put(FEEDBACKS, record["id"], record)],
            [Effect(FEEDBACKS, record["id"], record)], description=f"feedback from {record['userEmail']}",
        ))

    def post_announcement(self, text: str) -> Optional[Mutation]:
        message = (text or "").strip()
        if not self.is_admin or not message:
            return None
        record = Announcement.create(message, now_iso()).model_dump()
        return self.mutations.issue(Mutation(
            "post_announcement", record["id"], [WriteOp.put(ANNOUNCEMENTS, record["id"], record)],
            [Effect(ANNOUNCEMENTS, record["id"], record)], description=f"announcement {record['id']}",
        ))

    def delete_announcement(self, announcement_id: str) -> Optional[Mutation]:
        if not self.is_admin:
            return None
        aid = str(announcement_id)
        return self.mutations.issue(Mutation(
            "delete_announcement", aid, [WriteOp.delete(ANNOUNCEMENTS, aid)],
            [Effect(ANNOUNCEMENTS, aid)], description=f"delete announcement {aid}",
        ))

    # --- reads --------------------------------------------------------------
    @property
    def profiles(self) -> List[dict]:
        return self.sync.records(PROFILES)

    @property
    def connections(self) -> List[dict]:
        return self.sync.records(CONNECTIONS)

    @property
    def sent_requests(self) -> List[dict]:
        return self.sync.records(SENT)

    @property
    def received_requests(self) -> List[dict]:
        return self.sync.records(RECEIVED)

    @property
    def announcements(self) -> List[dict]:
        return self.sync.records(ANNOUNCEMENTS)

    @property
    def feedbacks(self) -> List[dict]:
        return self.sync.records(FEEDBACKS)

    @property
    def pending_mutations(self) -> List[Mutation]:
        return self.mutations.pending()

    @property
    def failed_mutations(self) -> List[Mutation]:
        return self.mutations.failed()

    def retry(self, mutation: Mutation) -> Optional[Mutation]:
        return self.mutations.retry(mutation)

    def discover(self, filter: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
        """
        Profiles the current user can browse: everyone but themselves, minus
        flagged profiles and profiles restricted to their own connections.
        `filter` is "core", "mutual" or an interest tag.
        """
        uid = str(self.user["id"]) if self.user else None
        needle = (search or "").strip().lower()
        out = []
        for p in self.profiles:
            pid = str(p["id"])
            if pid == uid or p.get("flagged"):
                continue
            if p.get("visible") == "connections" and not self.is_connected(pid):
                continue
            interests = p.get("interests") or []
            if filter == "core":
                if p.get("kind") != "core":
                    continue
            elif filter == "mutual":
                if not self.mutual_interests(p):
                    continue
            elif filter and filter not in interests:
                continue
            if needle and not (
                needle in (p.get("name") or "").lower()
                or needle in (p.get("college") or "").lower()
                or any(needle in i.lower() for i in interests)
            ):
                continue
            out.append(p)
        return out
