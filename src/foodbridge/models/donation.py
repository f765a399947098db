from datetime import datetime, timedelta, timezone
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError as PydanticValidationError,
)
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from foodbridge.core.exceptions import ValidationError


DonationStatus = Literal["available", "requested", "collected", "cancelled"]
ActorRole = Literal["donor", "ngo"]

POOL_STATUSES = frozenset({"available", "requested"})
TERMINAL_STATUSES = frozenset({"collected", "cancelled"})

ENTITY = "DONATION"
REVISION_FIELD = "revision"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Per-status fields of the flat document; everything else is content
STATE_FIELDS_BY_STATUS: dict[str, tuple[str, ...]] = {
    "available": (),
    "requested": ("requested_by", "requested_by_name", "requested_at"),
    "collected": ("collected_by", "collected_by_name", "collected_at"),
    "cancelled": ("cancelled_at",),
}
STATE_FIELDS = tuple(f for fields in STATE_FIELDS_BY_STATUS.values() for f in fields)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def format_timestamp(value: datetime | None) -> str | None:
    """Fixed-width UTC string, so lexical order matches time order in the store."""
    if value is None:
        return None
    return as_utc(value).strftime(TIMESTAMP_FORMAT)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]
NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class Actor(BaseModel):
    """Identity context of whoever triggers a lifecycle event."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    name: str
    role: ActorRole


class DonationItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: NonBlank
    is_veg: bool = True
    quantity: int = Field(gt=0)
    unit: str = "servings"


class Available(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["available"] = "available"

class Requested(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["requested"] = "requested"
    requested_by: str
    requested_by_name: str
    requested_at: UtcDatetime

class Collected(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["collected"] = "collected"
    collected_by: str
    collected_by_name: str
    collected_at: UtcDatetime

class Cancelled(BaseModel):
    model_config = ConfigDict(frozen=True)
    status: Literal["cancelled"] = "cancelled"
    cancelled_at: UtcDatetime


DonationState = Annotated[
    Union[Available, Requested, Collected, Cancelled],
    Field(discriminator="status"),
]


class DonationDraft(BaseModel):
    """What a donor fills in when posting surplus food."""
    items: list[DonationItem] = Field(min_length=1)
    weight: float = Field(gt=0)
    location: NonBlank
    expiry_time: UtcDatetime
    notes: str = ""
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None


def state_document(state: Available | Requested | Collected | Cancelled) -> dict[str, Any]:
    """Flat store fields for a state, with every other state's fields nulled out."""
    document: dict[str, Any] = {field: None for field in STATE_FIELDS}
    document["status"] = state.status
    for field, value in state.model_dump(exclude={"status"}).items():
        document[field] = format_timestamp(value) if isinstance(value, datetime) else value
    return document


def _field_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "donation"


class Donation(BaseModel):
    model_config = ConfigDict(frozen=True)

    donation_id: str

    items: tuple[DonationItem, ...] = Field(min_length=1)
    weight: float = Field(gt=0)
    location: NonBlank
    notes: str = ""
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None

    expiry_time: UtcDatetime
    created_at: UtcDatetime

    donor_id: str
    donor_name: str

    state: DonationState = Field(default_factory=Available)
    # Bumped by every state write; orders images of the same record
    revision: int = Field(default=1, ge=1)

    @classmethod
    def post(
        cls,
        draft: DonationDraft | Mapping[str, Any],
        donor: Actor,
        donation_id: str,
        now: datetime,
    ) -> "Donation":
        """
        Builds a brand new, available donation from a donor's draft.
        Raises ValidationError naming the first offending field.
        """
        if donor.role != "donor":
            raise ValidationError("donor_id", "Only donors can post donations.")

        data = draft.model_dump() if isinstance(draft, BaseModel) else dict(draft)
        try:
            parsed = DonationDraft.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(_field_path(first["loc"]), first["msg"]) from e

        now = as_utc(now)
        if parsed.expiry_time <= now:
            raise ValidationError("expiry_time", "Expiry time must be in the future.")

        return cls(
            donation_id=donation_id,
            items=tuple(parsed.items),
            weight=parsed.weight,
            location=parsed.location,
            notes=parsed.notes,
            contact_name=parsed.contact_name or None,
            contact_phone=parsed.contact_phone or None,
            expiry_time=parsed.expiry_time,
            created_at=now,
            donor_id=donor.actor_id,
            donor_name=donor.name,
            state=Available(),
        )

    @property
    def status(self) -> DonationStatus:
        return self.state.status

    @property
    def requested_by(self) -> str | None:
        return self.state.requested_by if isinstance(self.state, Requested) else None

    @property
    def requested_by_name(self) -> str | None:
        return self.state.requested_by_name if isinstance(self.state, Requested) else None

    @property
    def requested_at(self) -> datetime | None:
        return self.state.requested_at if isinstance(self.state, Requested) else None

    @property
    def collected_by(self) -> str | None:
        return self.state.collected_by if isinstance(self.state, Collected) else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def in_available_pool(self) -> bool:
        return self.status in POOL_STATUSES

    @property
    def is_veg(self) -> bool:
        return all(item.is_veg for item in self.items)

    @property
    def veg_label(self) -> str:
        if self.is_veg:
            return "All Veg"
        if not any(item.is_veg for item in self.items):
            return "All Non-Veg"
        return "Mixed"

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def freshness(self, now: datetime) -> str:
        left = self.expiry_time - as_utc(now)
        if left <= timedelta(hours=1):
            return "urgent"
        if left <= timedelta(hours=3):
            return "soon"
        return "fresh"

    def with_state(self, state: Available | Requested | Collected | Cancelled) -> "Donation":
        return self.model_copy(update={"state": state, "revision": self.revision + 1})

    def to_document(self) -> dict[str, Any]:
        document = {
            "donation_id": self.donation_id,
            "entity": ENTITY,
            "items": [item.model_dump() for item in self.items],
            "is_veg": self.is_veg,
            "weight": self.weight,
            "location": self.location,
            "notes": self.notes,
            "contact_name": self.contact_name,
            "contact_phone": self.contact_phone,
            "expiry_time": format_timestamp(self.expiry_time),
            "created_at": format_timestamp(self.created_at),
            "donor_id": self.donor_id,
            "donor_name": self.donor_name,
            "revision": self.revision,
        }
        document.update(state_document(self.state))
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Donation":
        status = document.get("status", "available")
        state = {"status": status}
        for field in STATE_FIELDS_BY_STATUS.get(status, ()):
            state[field] = document.get(field)

        return cls.model_validate({
            "donation_id": document["donation_id"],
            "items": document["items"],
            "weight": document["weight"],
            "location": document["location"],
            "notes": document.get("notes") or "",
            "contact_name": document.get("contact_name"),
            "contact_phone": document.get("contact_phone"),
            "expiry_time": document["expiry_time"],
            "created_at": document["created_at"],
            "donor_id": document["donor_id"],
            "donor_name": document["donor_name"],
            "state": state,
            "revision": document.get("revision") or 1,
        })
