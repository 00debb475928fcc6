import asyncio

from cache import LocalCache
from conftest import make_profile, signed_in
from database import MemoryDocumentStore, user_path
from mutations import MutationStatus
from schemas import EVENT_QUESTIONS
from session import FAILED, NO_ACCOUNT, SIGNED_IN, SessionController
from sync_engine import CONNECTIONS
from verifier import EMAIL_ONLY, IdentityVerifier

ALICE = make_profile("alice", interests=["AI/ML", "Fintech"])
BOB = make_profile("bob", interests=["Fintech", "D2C"])
CAROL = make_profile("carol", interests=["SaaS"], college="IIM Bangalore")
DAVE = make_profile("dave", visible="connections")
EVE = make_profile("eve", flagged=True, reason="spam")
CORE = [{
    "id": "core1", "kind": "core", "name": "Arun Kumar", "role": "Event Head",
    "email": "arun@strategia.com", "phone": "+919876500001", "interests": ["Consulting"],
}]


def feedback(event="VentureX", ratings=(5, 5, 5, 4, 4, 4)):
    keys = ("eventRating", "judgesRating", "volunteersRating", "q1Rating", "q2Rating", "q3Rating")
    return {"event": event, "improvement": "More water stations", **dict(zip(keys, ratings))}


async def admin_session(store, code="letmein"):
    session = SessionController(store, IdentityVerifier([]), LocalCache(path=None), admin_code=code)
    await session.start()
    assert session.admin_login(code)
    return session


def test_navigation_guards():
    session = SessionController(MemoryDocumentStore(), IdentityVerifier([]), LocalCache(path=None))
    assert session.view == "landing"
    assert session.navigate("app") == "login"
    assert session.navigate("admin") == "adminLogin"
    assert session.navigate("nowhere") == "adminLogin"
    assert session.navigate("privacy") == "privacy"


def test_sign_up_creates_verified_profile(store, verifier, signup_form):
    async def scenario():
        session = SessionController(store, verifier, LocalCache(path=None))
        await session.start()
        profile = await session.sign_up(signup_form)
        assert session.view == "app"
        assert session.user["id"] == profile["id"]
        await session.mutations.drain()
        return profile, await store.get_document("profiles", profile["id"])

    profile, stored = asyncio.run(scenario())
    assert profile["name"] == "Demo User"
    assert profile["phone"] == "+911234567890"
    assert profile["kind"] == "attendee"
    assert "consent" not in profile
    assert stored["email"] == "demo@test.com"
    assert stored["interests"] == ["AI/ML", "Fintech"]


def test_sign_up_rejects_unverified_or_incomplete(store, verifier, signup_form):
    async def scenario():
        session = SessionController(store, verifier, LocalCache(path=None))
        await session.start()
        wrong_phone = await session.sign_up({**signup_form, "phone": "1234567891"})
        no_consent = await session.sign_up({**signup_form, "consent": False})
        bad_interest = await session.sign_up({**signup_form, "interests": ["Underwater Basketry"]})
        return session, (wrong_phone, no_consent, bad_interest)

    session, results = asyncio.run(scenario())
    assert results == (None, None, None)
    assert session.view == "landing"
    assert session.user is None
    assert store.writes == 0


def test_existing_email_is_sent_to_login(store, verifier, signup_form):
    async def scenario():
        first = SessionController(store, verifier, LocalCache(path=None))
        await first.start()
        await first.sign_up(signup_form)
        await first.mutations.drain()

        second = SessionController(store, verifier, LocalCache(path=None))
        await second.start()
        again = await second.sign_up({**signup_form, "email": "Demo@Test.com"})
        return second, again

    second, again = asyncio.run(scenario())
    assert again is None
    assert second.view == "login"
    assert len(asyncio.run(store.get_documents("profiles"))) == 1


def test_sign_in_outcomes(store, verifier, signup_form):
    async def scenario():
        creator = SessionController(store, verifier, LocalCache(path=None))
        await creator.start()
        await creator.sign_up(signup_form)
        await creator.mutations.drain()

        session = SessionController(store, verifier, LocalCache(path=None))
        await session.start()
        mismatch = await session.sign_in("demo@test.com", "1234567891")
        no_account = await session.sign_in("test@strategia.com", "9999999999")
        ok = await session.sign_in("demo@test.com", "1234567890")
        return session, mismatch, no_account, ok

    session, mismatch, no_account, ok = asyncio.run(scenario())
    assert mismatch.status == FAILED and mismatch.reason == EMAIL_ONLY
    assert no_account.status == NO_ACCOUNT
    assert ok.status == SIGNED_IN
    assert ok.user["email"] == "demo@test.com"
    assert session.view == "app"


def test_core_team_can_sign_in_from_bundled_data():
    async def scenario():
        session = SessionController.from_environment(MemoryDocumentStore(), LocalCache(path=None))
        await session.start()
        result = await session.sign_in("arun@strategia.com", "9876500001")
        return session, result

    session, result = asyncio.run(scenario())
    assert result.status == SIGNED_IN
    assert result.user["kind"] == "core"
    # no live attendees yet: the sample profiles fill the directory
    assert {"core1", "1"} <= {p["id"] for p in session.profiles}


def test_mutual_interests_follow_the_users_order(store):
    session = asyncio.run(signed_in(store, ALICE))
    assert session.mutual_interests(BOB) == ["Fintech"]
    assert session.mutual_interests(CAROL) == []


def test_discover_filters(store):
    async def scenario():
        for p in (BOB, CAROL, DAVE, EVE):
            await store.put_document("profiles", p["id"], p)
        return await signed_in(store, ALICE, seed_profiles=CORE)

    alice = asyncio.run(scenario())

    def ids(profiles):
        return {p["id"] for p in profiles}

    assert ids(alice.discover()) == {"core1", "bob", "carol"}
    assert ids(alice.discover("core")) == {"core1"}
    assert ids(alice.discover("mutual")) == {"bob"}
    assert ids(alice.discover("SaaS")) == {"carol"}
    assert ids(alice.discover(search="iim")) == {"carol"}
    assert ids(alice.discover(search="d2c")) == {"bob"}

    async def connect_dave():
        await store.put_document(user_path("alice", CONNECTIONS), "dave", {**DAVE, "connectedAt": "2026-02-01"})

    asyncio.run(connect_dave())
    assert "dave" in ids(alice.discover())


def test_sign_out_keeps_only_shared_feeds(store, tmp_path):
    path = str(tmp_path / "cache.json")

    async def scenario():
        alice = await signed_in(store, ALICE, cache=LocalCache(path))
        await store.put_document("announcements", "a1", {"message": "Doors open", "timestamp": "2026-02-01T09:00:00+00:00"})
        alice.send_request(BOB)
        await alice.mutations.drain()
        assert LocalCache(path).get("sentRequests")
        alice.sign_out()
        return alice

    alice = asyncio.run(scenario())
    assert alice.user is None
    assert alice.view == "landing"
    assert alice.sent_requests == []
    reloaded = LocalCache(path)
    for key in ("user", "view", "sentRequests", "receivedRequests", "connections"):
        assert reloaded.get(key) is None
    assert reloaded.get("announcements")[0]["message"] == "Doors open"


def test_session_resumes_from_cache(store, tmp_path):
    path = str(tmp_path / "cache.json")

    async def scenario():
        alice = await signed_in(store, ALICE, cache=LocalCache(path))
        alice.send_request(BOB)
        await alice.close()

    asyncio.run(scenario())
    resumed = SessionController(store, IdentityVerifier([]), LocalCache(path))
    assert resumed.view == "app"
    assert resumed.user["id"] == "alice"
    assert resumed.is_pending("bob")


def test_feedback_once_per_attendee(store):
    async def scenario():
        alice = await signed_in(store, ALICE)
        bob = await signed_in(store, BOB)
        first = alice.submit_feedback(feedback())
        assert alice.has_submitted_feedback()
        duplicate = alice.submit_feedback(feedback(event="Case Quest"))
        bobs = bob.submit_feedback(feedback(event="StrategIQ", ratings=(5, 4, 4, 4, 4, 4)))
        await alice.mutations.drain()
        await bob.mutations.drain()
        return first, duplicate, bobs, await store.get_documents("feedbacks")

    first, duplicate, bobs, stored = asyncio.run(scenario())
    assert duplicate is None
    assert first.status == MutationStatus.CONFIRMED
    record = stored[first.target_id]
    assert record["rating"] == 5
    assert record["q1"] == EVENT_QUESTIONS["VentureX"][0]
    assert record["userEmail"] == "alice@example.edu"
    assert stored[bobs.target_id]["rating"] == 4
    assert len(stored) == 2


def test_feedback_rejects_out_of_range_rating(store):
    async def scenario():
        alice = await signed_in(store, ALICE)
        return alice.submit_feedback(feedback(ratings=(6, 5, 5, 5, 5, 5)))

    assert asyncio.run(scenario()) is None


def test_announcements_are_admin_only(store):
    async def scenario():
        alice = await signed_in(store, ALICE)
        assert alice.post_announcement("Free pizza") is None
        assert not alice.admin_login("guess")

        admin = await admin_session(store)
        assert admin.view == "admin"
        assert admin.post_announcement("   ") is None
        posted = admin.post_announcement("  Finals at 4pm ")
        await admin.mutations.drain()
        seen_by_alice = [a["message"] for a in alice.announcements]

        admin.delete_announcement(posted.target_id)
        await admin.mutations.drain()
        return seen_by_alice, alice.announcements

    seen, after = asyncio.run(scenario())
    assert seen == ["Finals at 4pm"]
    assert after == []


def test_admin_login_disabled_without_code(store):
    session = SessionController(store, IdentityVerifier([]), LocalCache(path=None), admin_code="")
    assert not session.admin_login("")
    assert not session.is_admin


def test_flag_unflag_and_remove(store):
    async def scenario():
        await store.put_document("profiles", "bob", BOB)
        alice = await signed_in(store, ALICE)
        alice.flag("bob", "fake profile")
        assert "bob" not in {p["id"] for p in alice.discover()}
        assert alice.unflag("bob") is None
        await alice.mutations.drain()
        flagged = await store.get_document("profiles", "bob")

        admin = await admin_session(store)
        admin.unflag("bob")
        await admin.mutations.drain()
        unflagged = await store.get_document("profiles", "bob")

        ghost = alice.flag("ghost", "who?")
        await alice.mutations.drain()

        admin.remove("bob")
        await admin.mutations.drain()
        return flagged, unflagged, ghost, await store.get_document("profiles", "bob")

    flagged, unflagged, ghost, removed = asyncio.run(scenario())
    assert flagged["flagged"] is True and flagged["reason"] == "fake profile"
    assert unflagged["flagged"] is False and unflagged["reason"] is None
    assert ghost.status == MutationStatus.FAILED
    assert removed is None


def test_owner_can_remove_own_profile(store):
    async def scenario():
        bob = await signed_in(store, BOB)
        alice = await signed_in(store, ALICE)
        assert alice.remove("bob") is None
        alice.remove("alice")
        assert alice.user is None
        await alice.mutations.drain()
        return await store.get_documents("profiles")

    remaining = asyncio.run(scenario())
    assert set(remaining) == {"bob"}


def test_update_profile_applies_locally_then_persists(store):
    async def scenario():
        alice = await signed_in(store, ALICE)
        mutation = alice.update_profile(bio="Quant nerd", visible="connections")
        assert alice.user["bio"] == "Quant nerd"
        assert alice.update_profile(bio="x" * 121) is None
        assert alice.update_profile() is None
        await mutation.wait()
        return alice, await store.get_document("profiles", "alice")

    alice, stored = asyncio.run(scenario())
    assert stored["bio"] == "Quant nerd"
    assert stored["visible"] == "connections"
    assert stored["email"] == "alice@example.edu"
    assert alice.user["visible"] == "connections"


def test_sign_out_before_start_drops_cached_ledger(store, tmp_path):
    path = str(tmp_path / "cache.json")
    cache = LocalCache(path)
    cache.set("view", "app")
    cache.set("user", ALICE)
    cache.set("connections", [{**BOB, "connectedAt": "2026-02-01"}])

    session = SessionController(store, IdentityVerifier([]), LocalCache(path))
    assert session.is_connected("bob")
    session.sign_out()
    assert not session.is_connected("bob")
    assert session.connections == []
    assert LocalCache(path).get("connections") is None


def test_flag_needs_a_signed_in_user(store):
    async def scenario():
        await store.put_document("profiles", "bob", BOB)
        session = SessionController(store, IdentityVerifier([]), LocalCache(path=None))
        await session.start()
        writes = store.writes
        result = session.flag("bob", "spam")
        await session.mutations.drain()
        return result, writes, await store.get_document("profiles", "bob")

    result, writes, stored = asyncio.run(scenario())
    assert result is None
    assert store.writes == writes
    assert not stored.get("flagged")
