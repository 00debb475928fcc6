import asyncio
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Awaitable, Callable, Optional, List, Dict

from fastapi import FastAPI, HTTPException, Header, WebSocket, WebSocketDisconnect, Query, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from database import DocumentStore, DocumentNotFound, Snapshot, Subscription, get_store, split_path, user_path
from ledger import ConnectionState, now_iso, plan_accept, plan_cancel, plan_decline, plan_send, state_of
from schemas import (
    AVATARS, GOALS, INTERESTS, YEARS, AllowlistEntry, Announcement, AttendeeProfile, EVENT_QUESTIONS, Feedback,
    FeedbackForm, ProfileUpdate, SignupForm,
)
from session import ADMIN_CODE, load_seed_profiles
from sync_engine import ANNOUNCEMENTS, CONNECTIONS, FEEDBACKS, PROFILES, RECEIVED, SENT
from verifier import IdentityVerifier, find_by_email, normalize_email, with_country_code

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("strategia_connect")

app = FastAPI(title="STRATEGIA Connect API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SESSIONS = "sessions"
SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "1440"))  # default 1 day

CORE_PROFILES, _ = load_seed_profiles()


@lru_cache(maxsize=1)
def get_verifier() -> IdentityVerifier:
    core = [AllowlistEntry(email=p["email"], phone=p["phone"], name=p["name"]) for p in CORE_PROFILES]
    return IdentityVerifier.from_file(extra=core)


# Helpers
class InsertResponse(BaseModel):
    id: str


class VerifyBody(BaseModel):
    email: str
    phone: str


class LoginResponse(BaseModel):
    token: str
    profile: dict


class FlagBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200)


class AnnouncementBody(BaseModel):
    message: str = Field(..., min_length=1)


class LedgerResponse(BaseModel):
    state: ConnectionState
    changed: bool


def to_public(doc_id: str, doc: dict) -> dict:
    d = dict(doc or {})
    d["id"] = str(doc_id)
    return d


def _now():
    return datetime.now(timezone.utc)


async def _all_profiles(store: DocumentStore) -> Dict[str, dict]:
    """Core team profiles merged with stored ones; the core record wins on id."""
    merged = {p["id"]: dict(p) for p in CORE_PROFILES}
    for doc_id, doc in (await store.get_documents(PROFILES)).items():
        merged.setdefault(doc_id, to_public(doc_id, doc))
    return merged


async def _ledger_state(store: DocumentStore, uid: str, pid: str) -> ConnectionState:
    return state_of(
        await store.get_document(user_path(uid, CONNECTIONS), pid) is not None,
        await store.get_document(user_path(uid, RECEIVED), pid) is not None,
        await store.get_document(user_path(uid, SENT), pid) is not None,
    )


def _expired(sess: dict) -> bool:
    exp = sess.get("expiresAt")
    return bool(exp) and datetime.fromisoformat(exp) < _now()


async def _session_user_id(store: DocumentStore, token: Optional[str]) -> Optional[str]:
    sess = await store.get_document(SESSIONS, token) if token else None
    if not sess or _expired(sess):
        return None
    return sess.get("userId")


async def _connected_ids(store: DocumentStore, uid: Optional[str]) -> set:
    if uid is None:
        return set()
    return set(await store.get_documents(user_path(uid, CONNECTIONS)))


def visible_profiles(profiles: Dict[str, dict], viewer_id: Optional[str], connected: set,
                     admin: bool = False) -> List[dict]:
    """
    Admins see everything. Everyone else sees profiles open to all, plus
    connection-only profiles they are connected to; phone numbers are shown
    only to the owner and their connections.
    """
    out = []
    for pid, p in profiles.items():
        if admin or pid == viewer_id or pid in connected:
            out.append(p)
        elif p.get("visible", "all") == "all":
            out.append({k: v for k, v in p.items() if k != "phone"})
    return out


async def current_user(authorization: Optional[str] = Header(default=None),
                       store: DocumentStore = Depends(get_store)) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1]
    sess = await store.get_document(SESSIONS, token)
    if not sess:
        raise HTTPException(status_code=401, detail="Invalid session")
    if _expired(sess):
        raise HTTPException(status_code=401, detail="Session expired")
    profile = (await _all_profiles(store)).get(sess.get("userId"))
    if profile is None:
        raise HTTPException(status_code=401, detail="Profile no longer exists")
    return profile


def require_admin(x_admin_code: Optional[str] = Header(default=None)) -> bool:
    if not ADMIN_CODE or not x_admin_code or not hmac.compare_digest(x_admin_code, ADMIN_CODE):
        raise HTTPException(status_code=403, detail="Invalid or missing admin code")
    return True


def is_admin_code(x_admin_code: Optional[str]) -> bool:
    return bool(ADMIN_CODE and x_admin_code and hmac.compare_digest(x_admin_code, ADMIN_CODE))


@app.get("/")
def read_root():
    return {"message": "STRATEGIA Connect API is running"}


# ---------------------------
# Verification and sessions
# ---------------------------

@app.post("/api/verify")
def verify(body: VerifyBody, verifier: IdentityVerifier = Depends(get_verifier)):
    return verifier.verify(body.email, with_country_code(body.phone)).as_dict()


@app.post("/api/auth/login", response_model=LoginResponse)
async def login(body: VerifyBody, store: DocumentStore = Depends(get_store),
                verifier: IdentityVerifier = Depends(get_verifier)):
    result = verifier.verify(body.email, with_country_code(body.phone))
    if not result.verified:
        raise HTTPException(status_code=401, detail=result.reason)
    try:
        email = normalize_email(body.email)
        profile = find_by_email((await _all_profiles(store)).values(), email)
        if profile is None:
            raise HTTPException(status_code=404, detail="No profile yet")
        token = secrets.token_urlsafe(32)
        await store.put_document(SESSIONS, token, {
            "userId": profile["id"],
            "email": email,
            "createdAt": _now().isoformat(),
            "expiresAt": (_now() + timedelta(minutes=SESSION_TTL_MINUTES)).isoformat(),
        })
        return LoginResponse(token=token, profile=profile)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/options")
def options():
    """Choices offered by the signup and feedback forms"""
    return {
        "interests": INTERESTS,
        "lookingFor": GOALS,
        "years": YEARS,
        "avatars": AVATARS,
        "events": {event: list(questions) for event, questions in EVENT_QUESTIONS.items()},
    }


@app.get("/api/me")
def me(user: dict = Depends(current_user)):
    return user


# ---------------------------
# Profiles
# ---------------------------

@app.post("/api/profiles", response_model=InsertResponse)
async def create_profile(form: SignupForm, store: DocumentStore = Depends(get_store),
                         verifier: IdentityVerifier = Depends(get_verifier)):
    phone = with_country_code(form.phone)
    result = verifier.verify(form.email, phone)
    if not result.verified:
        raise HTTPException(status_code=403, detail=result.reason)
    try:
        if find_by_email((await _all_profiles(store)).values(), form.email):
            raise HTTPException(status_code=409, detail="Account exists")
        profile = AttendeeProfile.from_signup(form, result.entry.name, phone, now_iso())
        await store.put_document(PROFILES, profile.id, profile.model_dump())
        return {"id": profile.id}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/profiles")
async def list_profiles(authorization: Optional[str] = Header(default=None),
                        x_admin_code: Optional[str] = Header(default=None),
                        store: DocumentStore = Depends(get_store)):
    viewer = await current_user(authorization, store) if authorization else None
    viewer_id = viewer["id"] if viewer else None
    connected = await _connected_ids(store, viewer_id)
    return visible_profiles(await _all_profiles(store), viewer_id, connected, is_admin_code(x_admin_code))


@app.patch("/api/profiles/me")
async def update_me(body: ProfileUpdate, user: dict = Depends(current_user),
                    store: DocumentStore = Depends(get_store)):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        return user
    try:
        await store.update_fields(PROFILES, user["id"], changes)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Profile not editable")
    return {**user, **changes}


@app.delete("/api/profiles/me")
async def delete_me(user: dict = Depends(current_user), store: DocumentStore = Depends(get_store)):
    await store.delete_document(PROFILES, user["id"])
    return {"deleted": True}


@app.post("/api/profiles/{profile_id}/flag")
async def flag_profile(profile_id: str, body: FlagBody, user: dict = Depends(current_user),
                       store: DocumentStore = Depends(get_store)):
    try:
        await store.update_fields(PROFILES, profile_id, {"flagged": True, "reason": body.reason})
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Profile not found")
    logger.info("Profile %s flagged by %s", profile_id, user["id"])
    return {"flagged": True}


@app.post("/api/profiles/{profile_id}/unflag")
async def unflag_profile(profile_id: str, _: bool = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    try:
        await store.update_fields(PROFILES, profile_id, {"flagged": False, "reason": None})
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"flagged": False}


@app.delete("/api/profiles/{profile_id}")
async def remove_profile(profile_id: str, _: bool = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    await store.delete_document(PROFILES, profile_id)
    return {"deleted": True}


# ---------------------------
# Connection ledger
# ---------------------------

@app.get("/api/ledger")
async def ledger(user: dict = Depends(current_user), store: DocumentStore = Depends(get_store)):
    out = {}
    for name in (SENT, RECEIVED, CONNECTIONS):
        docs = await store.get_documents(user_path(user["id"], name))
        out[name] = [to_public(k, v) for k, v in docs.items()]
    return out


@app.post("/api/requests/{target_id}", response_model=LedgerResponse)
async def send_request(target_id: str, user: dict = Depends(current_user),
                       store: DocumentStore = Depends(get_store)):
    if target_id == user["id"]:
        raise HTTPException(status_code=400, detail="Cannot connect with yourself")
    target = (await _all_profiles(store)).get(target_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    state = await _ledger_state(store, user["id"], target_id)
    if state != ConnectionState.NONE:
        return LedgerResponse(state=state, changed=False)
    await store.apply_batch(plan_send(user, target, now_iso()))
    return LedgerResponse(state=ConnectionState.REQUEST_SENT, changed=True)


@app.delete("/api/requests/{target_id}", response_model=LedgerResponse)
async def cancel_request(target_id: str, user: dict = Depends(current_user),
                         store: DocumentStore = Depends(get_store)):
    if await store.get_document(user_path(user["id"], SENT), target_id) is None:
        return LedgerResponse(state=await _ledger_state(store, user["id"], target_id), changed=False)
    await store.apply_batch(plan_cancel(user, {"id": target_id}))
    return LedgerResponse(state=await _ledger_state(store, user["id"], target_id), changed=True)


@app.post("/api/requests/{sender_id}/accept", response_model=LedgerResponse)
async def accept_request(sender_id: str, user: dict = Depends(current_user),
                         store: DocumentStore = Depends(get_store)):
    request = await store.get_document(user_path(user["id"], RECEIVED), sender_id)
    if request is None:
        return LedgerResponse(state=await _ledger_state(store, user["id"], sender_id), changed=False)
    sender = (await _all_profiles(store)).get(sender_id) or to_public(sender_id, request)
    await store.apply_batch(plan_accept(user, sender, now_iso()))
    return LedgerResponse(state=ConnectionState.CONNECTED, changed=True)


@app.post("/api/requests/{sender_id}/decline", response_model=LedgerResponse)
async def decline_request(sender_id: str, user: dict = Depends(current_user),
                          store: DocumentStore = Depends(get_store)):
    if await store.get_document(user_path(user["id"], RECEIVED), sender_id) is None:
        return LedgerResponse(state=await _ledger_state(store, user["id"], sender_id), changed=False)
    await store.apply_batch(plan_decline(user, {"id": sender_id}))
    return LedgerResponse(state=await _ledger_state(store, user["id"], sender_id), changed=True)


# ---------------------------
# Announcements and feedback
# ---------------------------

@app.get("/api/announcements")
async def list_announcements(store: DocumentStore = Depends(get_store)):
    docs = [to_public(k, v) for k, v in (await store.get_documents(ANNOUNCEMENTS)).items()]
    return sorted(docs, key=lambda d: d.get("timestamp", ""), reverse=True)


@app.post("/api/announcements", response_model=InsertResponse)
async def post_announcement(body: AnnouncementBody, _: bool = Depends(require_admin),
                            store: DocumentStore = Depends(get_store)):
    message = body.message.strip()
    if not message:
        raise HTTPException(status_code=422, detail="Announcement is empty")
    announcement = Announcement.create(message, now_iso())
    await store.put_document(ANNOUNCEMENTS, announcement.id, announcement.model_dump())
    return {"id": announcement.id}


@app.delete("/api/announcements/{announcement_id}")
async def delete_announcement(announcement_id: str, _: bool = Depends(require_admin),
                              store: DocumentStore = Depends(get_store)):
    await store.delete_document(ANNOUNCEMENTS, announcement_id)
    return {"deleted": True}


@app.get("/api/feedbacks")
async def list_feedbacks(_: bool = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    docs = [to_public(k, v) for k, v in (await store.get_documents(FEEDBACKS)).items()]
    return sorted(docs, key=lambda d: d.get("timestamp", ""), reverse=True)


@app.post("/api/feedbacks", response_model=InsertResponse)
async def submit_feedback(form: FeedbackForm, user: dict = Depends(current_user),
                          store: DocumentStore = Depends(get_store)):
    existing = await store.get_documents(FEEDBACKS)
    if find_by_email(existing.values(), user["email"], key="userEmail"):
        raise HTTPException(status_code=409, detail="Feedback already submitted")
    feedback = Feedback.from_form(form, user["email"], user["name"], now_iso())
    await store.put_document(FEEDBACKS, feedback.id, feedback.model_dump())
    return {"id": feedback.id}


# ---------------------------
# Live feeds (WebSocket)
# ---------------------------

def snapshot_payload(snapshot: Snapshot) -> dict:
    return {
        "path": snapshot.path,
        "documents": [to_public(k, v) for k, v in snapshot.documents.items()],
    }


Shaper = Callable[[Dict[str, dict]], Awaitable[List[dict]]]


class FeedManager:
    """One store subscription per path, fanned out to every socket on it.

    A socket may carry a shaper that turns the raw documents into what that
    viewer is allowed to see.
    """

    def __init__(self):
        self.active: Dict[str, List[WebSocket]] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._shapers: Dict[WebSocket, Shaper] = {}

    async def connect(self, path: str, websocket: WebSocket, store: DocumentStore,
                      shape: Optional[Shaper] = None):
        await websocket.accept()
        self.active.setdefault(path, []).append(websocket)
        if shape is not None:
            self._shapers[websocket] = shape
        if path not in self._subscriptions:
            self._subscriptions[path] = await store.subscribe(path, lambda snap: self._schedule(path, snap))
        else:
            docs = await store.get_documents(path)
            await self.send_personal(websocket, await self._payload(websocket, Snapshot(path, docs)))

    async def _payload(self, websocket: WebSocket, snapshot: Snapshot) -> dict:
        shape = self._shapers.get(websocket)
        if shape is None:
            return snapshot_payload(snapshot)
        return {"path": snapshot.path, "documents": await shape(snapshot.documents)}

    def _schedule(self, path: str, snapshot: Snapshot):
        asyncio.get_running_loop().create_task(self.broadcast(path, snapshot))

    def disconnect(self, path: str, websocket: WebSocket):
        self._shapers.pop(websocket, None)
        conns = self.active.get(path, [])
        if websocket in conns:
            conns.remove(websocket)
        if not conns:
            self.active.pop(path, None)
            sub = self._subscriptions.pop(path, None)
            if sub is not None:
                sub.unsubscribe()

    async def send_personal(self, websocket: WebSocket, data):
        await websocket.send_json(data)

    async def broadcast(self, path: str, snapshot: Snapshot):
        conns = self.active.get(path, [])
        for ws in list(conns):
            try:
                await ws.send_json(await self._payload(ws, snapshot))
            except Exception:
                try:
                    await ws.close()
                except Exception:
                    pass
                self.disconnect(path, ws)


manager = FeedManager()


def profile_shaper(store: DocumentStore, viewer_id: Optional[str], admin: bool) -> Shaper:
    async def shape(documents: Dict[str, dict]) -> List[dict]:
        connected = await _connected_ids(store, viewer_id)
        profiles = {k: to_public(k, v) for k, v in documents.items()}
        return visible_profiles(profiles, viewer_id, connected, admin)
    return shape


@app.websocket("/ws/feeds/{path:path}")
async def feed_endpoint(websocket: WebSocket, path: str, token: Optional[str] = Query(default=None),
                        code: Optional[str] = Query(default=None),
                        store: DocumentStore = Depends(get_store)):
    try:
        parts = split_path(path)
    except ValueError:
        await websocket.close(code=4004)
        return
    admin = is_admin_code(code)
    if parts[0] == SESSIONS or (parts[0] == FEEDBACKS and not admin):
        await websocket.close(code=4003)
        return
    viewer_id = await _session_user_id(store, token)
    if token and viewer_id is None:
        await websocket.close(code=4001)
        return
    if parts[0] == "users" and viewer_id != parts[1]:
        # ledger feeds are private to their owner
        await websocket.close(code=4001)
        return
    shape = profile_shaper(store, viewer_id, admin) if parts[0] == PROFILES else None
    path = "/".join(parts)
    await manager.connect(path, websocket, store, shape)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(path, websocket)
    except Exception:
        logger.exception("Feed socket for %s failed", path)
        manager.disconnect(path, websocket)


@app.get("/health")
def health(store: DocumentStore = Depends(get_store)):
    """Report whether the document store is reachable"""
    report = store.describe()
    response = {
        "backend": "✅ Running",
        "database": "✅ Connected & Working" if report.get("connected") else "❌ Not Available",
        "store": report.get("backend"),
        "collections": report.get("collections", []),
        "live_feeds": sorted(manager.active),
    }
    if report.get("error"):
        response["database"] = f"⚠️  Connected but Error: {report['error']}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
