from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Literal, Optional

from foodbridge.models.donation import ActorRole, Donation, DonationItem, DonationStatus
from foodbridge.services.cancellation import format_countdown, time_remaining

class CognitoUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sub: str  # The unique user ID from Cognito
    email: EmailStr
    email_verified: bool
    name: Optional[str] = None
    role: ActorRole = Field(alias="custom:role")

class DonationResponse(BaseModel):
    donation_id: str
    status: DonationStatus
    items: list[DonationItem]
    is_veg: bool
    veg_label: str
    total_quantity: int
    weight: float
    location: str
    notes: str
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    expiry_time: datetime
    freshness: Literal["urgent", "soon", "fresh"]
    created_at: datetime
    donor_id: str
    donor_name: str
    requested_by: Optional[str] = None
    requested_by_name: Optional[str] = None
    requested_at: Optional[datetime] = None
    collected_by: Optional[str] = None

    @classmethod
    def from_donation(cls, donation: Donation, now: datetime) -> "DonationResponse":
        return cls(
            donation_id=donation.donation_id,
            status=donation.status,
            items=list(donation.items),
            is_veg=donation.is_veg,
            veg_label=donation.veg_label,
            total_quantity=donation.total_quantity,
            weight=donation.weight,
            location=donation.location,
            notes=donation.notes,
            contact_name=donation.contact_name,
            contact_phone=donation.contact_phone,
            expiry_time=donation.expiry_time,
            freshness=donation.freshness(now),
            created_at=donation.created_at,
            donor_id=donation.donor_id,
            donor_name=donation.donor_name,
            requested_by=donation.requested_by,
            requested_by_name=donation.requested_by_name,
            requested_at=donation.requested_at,
            collected_by=donation.collected_by,
        )

class CancelWindowResponse(BaseModel):
    donation_id: str
    cancellable: bool
    remaining_seconds: int
    countdown: str

    @classmethod
    def for_request(cls, donation_id: str, requested_at: Optional[datetime], cancellable: bool, now: datetime) -> "CancelWindowResponse":
        if requested_at is None:
            return cls(donation_id=donation_id, cancellable=False, remaining_seconds=0, countdown="0:00")
        remaining = time_remaining(now, requested_at)
        return cls(
            donation_id=donation_id,
            cancellable=cancellable,
            remaining_seconds=int(remaining.total_seconds()),
            countdown=format_countdown(remaining),
        )

class StatsResponse(BaseModel):
    role: ActorRole
    total_posted: Optional[int] = None
    collected: Optional[int] = None
    meals_saved: Optional[int] = None
    pending_pickups: Optional[int] = None
    available: int
