"""
Identity verification against the pre-registered participant allowlist.

The allowlist is a static JSON artifact loaded once at startup. Matching is
pure and synchronous; callers that want to simulate a registry round-trip add
their own delay.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from schemas import AllowlistEntry

logger = logging.getLogger(__name__)

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
ALLOWLIST_PATH = os.getenv("ALLOWLIST_PATH", os.path.join(DATA_DIR, "allowlist.json"))
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "+91")

VERIFIED = "verified"
FAILED = "failed"

EMAIL_ONLY = "email matched, phone did not"
PHONE_ONLY = "phone matched, email did not"
NO_MATCH = "not in participant list"

_PHONE_PUNCT = re.compile(r"[\s\-()]")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_phone(phone: str) -> str:
    return _PHONE_PUNCT.sub("", phone or "").lstrip("0")


def with_country_code(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Prefix a local number with the country code unless it already has one."""
    phone = (phone or "").strip()
    if phone.startswith("+"):
        return phone
    return country_code + phone


def find_by_email(records: Iterable[dict], email: str, key: str = "email") -> Optional[dict]:
    """First record whose `key` field holds `email`, compared normalized."""
    e = normalize_email(email)
    for record in records:
        if normalize_email(record.get(key) or "") == e:
            return record
    return None


@dataclass(frozen=True)
class VerificationResult:
    status: str
    entry: Optional[AllowlistEntry] = None
    reason: Optional[str] = None
    mismatched: Optional[str] = None  # "email", "phone" or "both"

    @property
    def verified(self) -> bool:
        return self.status == VERIFIED

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "name": self.entry.name if self.entry else None,
            "reason": self.reason,
            "mismatched": self.mismatched,
        }


def load_allowlist(path: str = ALLOWLIST_PATH) -> List[AllowlistEntry]:
    with open(path, "r", encoding="utf-8") as f:
        rows = json.load(f)
    entries = [AllowlistEntry(**row) for row in rows]
    logger.info("Loaded %d allowlist entries from %s", len(entries), path)
    return entries


class IdentityVerifier:
    """Matches an (email, phone) pair against a fixed set of registrants."""

    def __init__(self, entries: Iterable[AllowlistEntry]):
        self._entries = tuple(entries)
        self._emails = {normalize_email(e.email) for e in self._entries}
        self._phones = {normalize_phone(e.phone) for e in self._entries}

    @classmethod
    def from_file(cls, path: str = ALLOWLIST_PATH, extra: Iterable[AllowlistEntry] = ()) -> "IdentityVerifier":
        return cls([*load_allowlist(path), *extra])

    def __len__(self) -> int:
        return len(self._entries)

    def is_email_registered(self, email: str) -> bool:
        return normalize_email(email) in self._emails

    def is_phone_registered(self, phone: str) -> bool:
        return normalize_phone(phone) in self._phones

    def verify(self, email: str, phone: str) -> VerificationResult:
        """
        Return the allowlist entry whose email AND phone both match.

        On a miss, report which side matched some entry so the attendee knows
        what to fix, without revealing anything else about the registry.
        """
        e = normalize_email(email)
        p = normalize_phone(phone)
        for entry in self._entries:
            if normalize_email(entry.email) == e and normalize_phone(entry.phone) == p:
                return VerificationResult(VERIFIED, entry=entry)

        email_known = e in self._emails
        phone_known = p in self._phones
        if email_known and not phone_known:
            return VerificationResult(FAILED, reason=EMAIL_ONLY, mismatched="phone")
        if phone_known and not email_known:
            return VerificationResult(FAILED, reason=PHONE_ONLY, mismatched="email")
        return VerificationResult(FAILED, reason=NO_MATCH, mismatched="both")
