"""
Record Schemas for STRATEGIA Connect

Each Pydantic model describes a document shape held in the document store.
Collections are addressed by path (e.g. "profiles", "users/{uid}/connections");
records travel through the engine as plain dicts and are validated with these
models at the edges (signup, settings, service request bodies).
"""

import uuid

from pydantic import BaseModel, Field, EmailStr, TypeAdapter, field_validator
from typing import Annotated, Optional, List, Literal, Union

INTERESTS = [
    "Fintech", "EdTech", "HealthTech", "AI/ML", "D2C", "SaaS",
    "Marketing", "Consulting", "Finance", "Crypto", "E-commerce", "Content",
]
GOALS = [
    "Project Partners", "Friends", "Networking", "Startup Ideas",
    "Case Comp Team", "Fest Crew", "Career Advice", "Just Vibing",
]
YEARS = ["1st Year", "2nd Year", "3rd Year", "4th Year", "MBA 1st", "MBA 2nd", "Alumni"]
AVATARS = ["👨‍💼", "👩‍💼", "👨‍💻", "👩‍💻", "👨‍🎓", "👩‍🎓"]

EVENT_QUESTIONS = {
    "StrategIQ": (
        "Were the questions challenging yet fair?",
        "Was the time per question appropriate?",
        "How was the quiz interface/buzzer system?",
    ),
    "Market Masters": (
        "How intuitive was the trading terminal?",
        "Was the market simulation realistic?",
        "Were the portfolio presentation guidelines clear?",
    ),
    "VentureX": (
        "Was the pitching time sufficient?",
        "How helpful was the judges' feedback?",
        "Were the evaluation criteria clear?",
    ),
    "Case Quest": (
        "Was the case study appropriately complex?",
        "Was the preparation time adequate?",
        "Were the presentation guidelines clear?",
    ),
}


def new_id() -> str:
    """Id for a record created by this service or a client session."""
    return uuid.uuid4().hex


class AllowlistEntry(BaseModel):
    email: str = Field(..., description="Registered email")
    phone: str = Field(..., description="Registered phone, with country code")
    name: str = Field(..., description="Registered participant name")


# Profiles: one tagged variant per kind
class _ProfileBase(BaseModel):
    id: str = Field(..., description="Stable profile id")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address")
    phone: str = Field("", description="Phone, shared only with connections")
    college: str = ""
    year: str = ""
    bio: str = Field("", max_length=120)
    linkedin: str = ""
    avatar: str = "👤"
    interests: List[str] = Field(default_factory=list, description="Interest tags")
    lookingFor: List[str] = Field(default_factory=list, description="Goal tags")
    flagged: bool = False
    reason: Optional[str] = None
    verified: bool = True
    connectionCount: int = Field(0, description="Advisory counter, display only")
    createdAt: Optional[str] = None


class CoreProfile(_ProfileBase):
    kind: Literal["core"] = "core"
    role: str = Field(..., description="Core team role, e.g. Event Head")


class AttendeeProfile(_ProfileBase):
    kind: Literal["attendee"] = "attendee"
    visible: Literal["all", "connections"] = Field("all", description="Audience scope")

    @classmethod
    def from_signup(cls, form: "SignupForm", name: str, phone: str, created_at: str) -> "AttendeeProfile":
        """A new profile from a verified signup; `name` comes from the allowlist."""
        fields = form.model_dump(exclude={"consent"})
        fields["phone"] = phone
        return cls(id=new_id(), name=name, createdAt=created_at, **fields)


Profile = Annotated[Union[CoreProfile, AttendeeProfile], Field(discriminator="kind")]
profile_adapter = TypeAdapter(Profile)


def parse_profile(record: dict) -> Union[CoreProfile, AttendeeProfile]:
    """Validate a stored profile record; untagged records are attendees."""
    data = dict(record)
    data.setdefault("kind", "core" if data.get("isCore") else "attendee")
    data.pop("isCore", None)
    return profile_adapter.validate_python(data)


class SignupForm(BaseModel):
    """What an attendee submits to create a profile."""
    email: EmailStr
    phone: str = Field(..., description="10-digit local mobile number or full +CC number")
    college: str = Field(..., min_length=1)
    year: Literal["1st Year", "2nd Year", "3rd Year", "4th Year", "MBA 1st", "MBA 2nd", "Alumni"]
    interests: List[str] = Field(..., min_length=1)
    lookingFor: List[str] = Field(..., min_length=1)
    bio: str = Field("", max_length=120)
    linkedin: str = ""
    avatar: str = "👤"
    visible: Literal["all", "connections"] = "all"
    consent: bool = Field(False, description="Consent to share profile per visibility")

    @field_validator("interests")
    @classmethod
    def _known_interests(cls, v: List[str]) -> List[str]:
        unknown = [i for i in v if i not in INTERESTS]
        if unknown:
            raise ValueError(f"Unknown interests: {', '.join(unknown)}")
        return v

    @field_validator("lookingFor")
    @classmethod
    def _known_goals(cls, v: List[str]) -> List[str]:
        unknown = [g for g in v if g not in GOALS]
        if unknown:
            raise ValueError(f"Unknown goals: {', '.join(unknown)}")
        return v

    @field_validator("consent")
    @classmethod
    def _consent_given(cls, v: bool) -> bool:
        if not v:
            raise ValueError("Consent is required to create a profile")
        return v


class ProfileUpdate(BaseModel):
    """Owner-editable settings. Identity fields (id, email, phone) are not here."""
    college: Optional[str] = None
    year: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=120)
    linkedin: Optional[str] = None
    avatar: Optional[str] = None
    interests: Optional[List[str]] = None
    lookingFor: Optional[List[str]] = None
    visible: Optional[Literal["all", "connections"]] = None


class Announcement(BaseModel):
    id: str
    message: str = Field(..., min_length=1)
    timestamp: str

    @classmethod
    def create(cls, message: str, timestamp: str) -> "Announcement":
        return cls(id=new_id(), message=message, timestamp=timestamp)


Rating = Annotated[int, Field(ge=1, le=5)]


class FeedbackForm(BaseModel):
    event: Literal["StrategIQ", "Market Masters", "VentureX", "Case Quest"]
    eventRating: Rating
    judgesRating: Rating
    volunteersRating: Rating
    q1Rating: Rating
    q2Rating: Rating
    q3Rating: Rating
    improvement: str = ""

    def ratings(self) -> List[int]:
        return [self.eventRating, self.judgesRating, self.volunteersRating,
                self.q1Rating, self.q2Rating, self.q3Rating]


def mean_rating(ratings: List[int]) -> int:
    """Mean of the ratings, halves rounded up."""
    return int(sum(ratings) / len(ratings) + 0.5)


class Feedback(FeedbackForm):
    id: str
    userEmail: str
    userName: str
    q1: str
    q2: str
    q3: str
    rating: int
    timestamp: str

    @classmethod
    def from_form(cls, form: FeedbackForm, user_email: str, user_name: str, timestamp: str) -> "Feedback":
        q1, q2, q3 = EVENT_QUESTIONS[form.event]
        return cls(
            **form.model_dump(), id=new_id(), userEmail=user_email, userName=user_name,
            q1=q1, q2=q2, q3=q3, rating=mean_rating(form.ratings()), timestamp=timestamp,
        )
