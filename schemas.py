"""
Database Schemas for the NGO Project API

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercased class name. The same model validates request bodies in the route
handlers and every document ``DocumentStore`` writes.

Examples:
- User -> "user"
- Donation -> "donation"
- Project -> "project"
- Event -> "event"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Optional, Tuple, Type

from bson import ObjectId
from pydantic import (
    AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field,
    PlainValidator, StringConstraints, ValidationInfo, model_validator,
)
from pydantic_core import PydanticCustomError


class Role(str, Enum):
    DONOR = "donor"
    VOLUNTEER = "volunteer"
    ADMIN = "admin"


class DonationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProjectCategory(str, Enum):
    EDUCATION = "education"
    HEALTHCARE = "healthcare"
    ENVIRONMENT = "environment"
    COMMUNITY = "community"
    EMERGENCY = "emergency"
    OTHER = "other"


class ProjectStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    FUNDRAISER = "fundraiser"
    VOLUNTEER = "volunteer"
    WORKSHOP = "workshop"
    CONFERENCE = "conference"
    COMMUNITY = "community"
    AWARENESS = "awareness"
    OTHER = "other"


class EventStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"


def utcnow() -> datetime:
    """Naive UTC at millisecond precision, the resolution MongoDB stores."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def values(enum_cls) -> Tuple[str, ...]:
    return tuple(member.value for member in enum_cls)


# ===== Field types =====
INT64_MAX = 2 ** 63 - 1


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _no_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise PydanticCustomError("number_type", "Input should be a number")
    return value


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _numeric(value: Any) -> Any:
    return _strip(_no_bool(value))


def _fits_int64(value: int) -> int:
    if abs(value) > INT64_MAX:
        raise PydanticCustomError("number_too_large", "Number is too large")
    return value


def _object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise PydanticCustomError("object_id", "Input should be a valid ObjectId")


Text = Annotated[str, StringConstraints(strip_whitespace=True)]
Email = Annotated[EmailStr, BeforeValidator(_strip), AfterValidator(str.lower)]
# Stored as doubles, so integers beyond 64 bits never reach the encoder
Number = Annotated[float, BeforeValidator(_numeric), Field(allow_inf_nan=False)]
WholeNumber = Annotated[int, BeforeValidator(_numeric), AfterValidator(_fits_int64)]
Timestamp = Annotated[datetime, BeforeValidator(_no_bool), AfterValidator(to_utc)]
PyObjectId = Annotated[ObjectId, PlainValidator(_object_id)]


class Document(BaseModel):
    """Base for stored entities.

    ``messages`` overrides the generated error text, keyed by
    ``"<field>.<error type>"``. ``references`` maps each user reference field
    to the name used when the referenced user is missing.

    Validation context may carry ``written``, the fields an update touches;
    without it the whole document is being created.
    """

    model_config = ConfigDict(
        extra="ignore",
        use_enum_values=True,
        arbitrary_types_allowed=True,
        coerce_numbers_to_str=True,
    )

    collection: ClassVar[str]
    messages: ClassVar[Dict[str, str]] = {}
    references: ClassVar[Dict[str, str]] = {}

    @classmethod
    def label(cls, field: str) -> str:
        info = cls.model_fields.get(field)
        return info.title if info is not None and info.title else field

    @classmethod
    def message_for(cls, field: str, error_type: str) -> Optional[str]:
        return cls.messages.get(f"{field}.{error_type}")


def touches(info: ValidationInfo, *fields: str) -> bool:
    """Whether a cross-field rule over ``fields`` applies to this write."""
    written = (info.context or {}).get("written")
    return written is None or bool(written.intersection(fields))


def reject(problems) -> None:
    if problems:
        raise PydanticCustomError("cross_field", ", ".join(problems))


# Users
class User(Document):
    collection: ClassVar[str] = "user"
    messages: ClassVar[Dict[str, str]] = {
        "email.value_error": "Please enter a valid email",
        "role.enum": "Invalid role. Role must be either donor, volunteer, or admin",
    }

    name: Text = Field(..., title="Name", max_length=100, description="Full name")
    email: Email = Field(..., title="Email", description="Email address")
    role: Role = Field(..., title="Role", description="Role: donor/volunteer/admin")
    password: Optional[str] = Field(None, title="Password", min_length=6, description="Password (stored hashed)")


# Donations
class Donation(Document):
    collection: ClassVar[str] = "donation"
    references: ClassVar[Dict[str, str]] = {"donorId": "Donor"}
    messages: ClassVar[Dict[str, str]] = {
        "amount.greater_than": "Amount must be greater than 0",
        "donorId.object_id": "Invalid donor ID format. Must be a valid ObjectId.",
        "status.enum": "Invalid status. Status must be either pending, completed, or cancelled",
    }

    amount: Number = Field(..., title="Amount", gt=0)
    donorId: PyObjectId = Field(..., title="Donor ID")
    projectId: Text = Field(..., title="Project ID")
    description: Optional[Text] = Field(None, title="Description", max_length=200)
    date: Timestamp = Field(default_factory=utcnow, title="Donation date")
    status: DonationStatus = Field(DonationStatus.PENDING.value, title="Status")


# Projects
class Project(Document):
    collection: ClassVar[str] = "project"
    references: ClassVar[Dict[str, str]] = {"managerId": "Project manager"}
    messages: ClassVar[Dict[str, str]] = {
        "managerId.object_id": "Invalid manager ID format. Must be a valid ObjectId.",
        "category.enum": "Invalid category. Must be one of: " + ", ".join(values(ProjectCategory)),
        "status.enum": "Invalid status. Must be one of: " + ", ".join(values(ProjectStatus)),
    }

    name: Text = Field(..., title="Project name", max_length=100)
    description: Text = Field(..., title="Description", max_length=500)
    startDate: Timestamp = Field(..., title="Start date")
    endDate: Timestamp = Field(..., title="End date")
    budget: Number = Field(..., title="Budget", ge=0)
    targetAmount: Number = Field(..., title="Target amount", ge=0)
    managerId: PyObjectId = Field(..., title="Manager ID")
    location: Optional[Text] = Field(None, title="Location", max_length=200)
    category: ProjectCategory = Field(..., title="Category")
    status: ProjectStatus = Field(ProjectStatus.PLANNING.value, title="Status")

    @model_validator(mode="after")
    def check_schedule(self, info: ValidationInfo):
        problems = []
        if touches(info, "startDate", "endDate") and not self.endDate > self.startDate:
            problems.append("End date must be after start date")
        reject(problems)
        return self


# Events
class Event(Document):
    collection: ClassVar[str] = "event"
    references: ClassVar[Dict[str, str]] = {"organizerId": "Event organizer"}
    messages: ClassVar[Dict[str, str]] = {
        "organizerId.object_id": "Invalid organizer ID format. Must be a valid ObjectId.",
        "type.enum": "Invalid event type. Must be one of: " + ", ".join(values(EventType)),
        "status.enum": "Invalid status. Must be one of: " + ", ".join(values(EventStatus)),
        "maxAttendees.greater_than_equal": "Maximum attendees must be between 1 and 10,000",
        "maxAttendees.less_than_equal": "Maximum attendees must be between 1 and 10,000",
    }

    name: Text = Field(..., title="Event name", max_length=100)
    description: Text = Field(..., title="Description", max_length=500)
    date: Timestamp = Field(..., title="Event date")
    endDate: Timestamp = Field(..., title="End date")
    location: Text = Field(..., title="Location", max_length=200)
    organizerId: PyObjectId = Field(..., title="Organizer ID")
    type: EventType = Field(..., title="Event type")
    status: EventStatus = Field(EventStatus.PLANNED.value, title="Status")
    maxAttendees: Optional[WholeNumber] = Field(None, title="Maximum attendees", ge=1, le=10000)
    currentAttendees: WholeNumber = Field(0, title="Current attendees", ge=0)
    registrationDeadline: Timestamp = Field(..., title="Registration deadline")
    entryFee: Number = Field(0, title="Entry fee", ge=0)

    @model_validator(mode="after")
    def check_relations(self, info: ValidationInfo):
        problems = []
        if touches(info, "date") and not self.date > utcnow():
            problems.append("Event date must be in the future")
        if touches(info, "date", "endDate") and not self.endDate > self.date:
            problems.append("End date must be after start date")
        if touches(info, "date", "registrationDeadline") and not self.registrationDeadline < self.date:
            problems.append("Registration deadline must be before event date")
        if (self.maxAttendees is not None and touches(info, "maxAttendees", "currentAttendees")
                and self.currentAttendees > self.maxAttendees):
            problems.append("Current attendees cannot exceed maximum attendees")
        reject(problems)
        return self


SCHEMAS: Dict[str, Type[Document]] = {
    model.collection: model for model in (User, Donation, Project, Event)
}


# ===== Request / response models =====
class LoginPayload(BaseModel):
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Plain text password")


class Principal(BaseModel):
    id: str = Field(..., description="User _id as string")
    email: str
    role: Role


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict
