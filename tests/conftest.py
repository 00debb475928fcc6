import pytest

from cache import LocalCache
from database import MemoryDocumentStore
from schemas import AllowlistEntry
from session import SessionController
from verifier import IdentityVerifier


def make_profile(pid, name=None, interests=("Fintech",), **extra):
    name = name or pid.title()
    profile = {
        "id": pid,
        "kind": "attendee",
        "name": name,
        "email": f"{pid}@example.edu",
        "phone": "+910000000000",
        "college": "Loyola College",
        "year": "2nd Year",
        "interests": list(interests),
        "lookingFor": ["Networking"],
        "flagged": False,
        "reason": None,
        "visible": "all",
        "connectionCount": 0,
    }
    profile.update(extra)
    return profile


async def signed_in(store, profile, cache=None, **kwargs):
    """A started session for `profile`, resumed from a cache holding the user."""
    await store.put_document("profiles", profile["id"], profile)
    cache = cache if cache is not None else LocalCache(path=None)
    cache.set("user", profile)
    cache.set("view", "app")
    session = SessionController(store, kwargs.pop("verifier", IdentityVerifier([])), cache, **kwargs)
    await session.start()
    return session


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def verifier():
    return IdentityVerifier([
        AllowlistEntry(email="demo@test.com", phone="+911234567890", name="Demo User"),
        AllowlistEntry(email="test@strategia.com", phone="+919999999999", name="Test User"),
        AllowlistEntry(email="priya.sharma@iitm.ac.in", phone="+919876543210", name="Priya Sharma"),
    ])


@pytest.fixture
def signup_form():
    return {
        "email": "demo@test.com",
        "phone": "1234567890",
        "college": "Loyola College",
        "year": "3rd Year",
        "interests": ["AI/ML", "Fintech"],
        "lookingFor": ["Networking"],
        "bio": "Here for the case comps",
        "consent": True,
    }
