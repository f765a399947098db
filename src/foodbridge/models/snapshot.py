import logging
from datetime import datetime
from pydantic import BaseModel, ConfigDict, ValidationError

from foodbridge.models.donation import Donation, UtcDatetime

logger = logging.getLogger(__name__)


class DonorStats(BaseModel):
    total_posted: int
    available: int
    collected: int

class NgoStats(BaseModel):
    meals_saved: int  # one serving counted as one meal
    available: int
    pending_pickups: int


class DonationSnapshot(BaseModel):
    """
    Immutable view of the whole donation collection, newest-created first.
    `version` only ever grows for a given gateway.
    """
    model_config = ConfigDict(frozen=True)

    version: int
    taken_at: UtcDatetime
    donations: tuple[Donation, ...] = ()

    def __len__(self) -> int:
        return len(self.donations)

    def get(self, donation_id: str) -> Donation | None:
        for donation in self.donations:
            if donation.donation_id == donation_id:
                return donation
        return None

    def available(self) -> list[Donation]:
        # Requested donations stay listed so other NGOs can see they are taken
        return [d for d in self.donations if d.in_available_pool]

    def by_donor(self, donor_id: str) -> list[Donation]:
        return [d for d in self.donations if d.donor_id == donor_id]

    def for_ngo(self, ngo_id: str) -> list[Donation]:
        return [
            d for d in self.donations
            if d.requested_by == ngo_id or d.collected_by == ngo_id
        ]

    def donor_stats(self, donor_id: str) -> DonorStats:
        mine = self.by_donor(donor_id)
        return DonorStats(
            total_posted=len(mine),
            available=sum(1 for d in mine if d.status == "available"),
            collected=sum(1 for d in mine if d.status == "collected"),
        )

    def ngo_stats(self, ngo_id: str) -> NgoStats:
        mine = self.for_ngo(ngo_id)
        return NgoStats(
            meals_saved=sum(d.total_quantity for d in mine if d.status == "collected"),
            available=len(self.available()),
            pending_pickups=sum(1 for d in mine if d.status == "requested"),
        )

    @classmethod
    def from_documents(cls, version: int, taken_at: datetime, documents: list[dict]) -> "DonationSnapshot":
        """Builds a snapshot from stored documents, leaving out any that are malformed."""
        donations = []
        for document in documents:
            try:
                donations.append(Donation.from_document(document))
            except (KeyError, ValidationError) as e:
                logger.warning(
                    f"Skipping malformed donation document: {e}",
                    extra={"donation_id": document.get("donation_id")},
                )
        return cls(version=version, taken_at=taken_at, donations=tuple(donations))
