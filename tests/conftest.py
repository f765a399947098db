from datetime import datetime, timedelta, timezone

import pytest

from foodbridge.data_access.memory import InMemoryDonationStore
from foodbridge.models.donation import Actor, Donation
from foodbridge.services.donation_gateway import DonationGateway

START = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def donor():
    return Actor(actor_id="donor-1", name="Green Bowl Kitchen", role="donor")

@pytest.fixture
def other_donor():
    return Actor(actor_id="donor-2", name="Corner Bakery", role="donor")

@pytest.fixture
def ngo_a():
    return Actor(actor_id="ngo-a", name="Helping Hands", role="ngo")

@pytest.fixture
def ngo_b():
    return Actor(actor_id="ngo-b", name="Food For All", role="ngo")


@pytest.fixture
def make_draft(clock):
    def _make(**overrides):
        draft = {
            "items": [
                {"name": "Rice", "is_veg": True, "quantity": 10, "unit": "servings"},
                {"name": "Chicken Curry", "is_veg": False, "quantity": 5, "unit": "servings"},
            ],
            "weight": 12.5,
            "location": "14 Market Street, back entrance",
            "expiry_time": clock.now + timedelta(hours=3),
            "notes": "Ring the bell twice",
            "contact_name": "Asha",
            "contact_phone": "555-0100",
        }
        draft.update(overrides)
        return draft
    return _make

@pytest.fixture
def draft(make_draft):
    return make_draft()


@pytest.fixture
def posted(draft, donor, clock):
    """A freshly posted donation, not persisted anywhere."""
    return Donation.post(draft, donor, donation_id="donation-1", now=clock.now)


@pytest.fixture
def store():
    return InMemoryDonationStore()

@pytest.fixture
def gateway(store, clock):
    return DonationGateway(store=store, clock=clock)
