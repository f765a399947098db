"""
Donation lifecycle rules.

    available --request--> requested --mark_collected--> collected
        ^                     |  |
        +---cancel_request----+  +--cancel_donation--> cancelled
    available --cancel_donation--> cancelled

Terminal records (collected, cancelled) can only be deleted.

Everything here is synchronous and side-effect free. `apply_event` runs the
rules against an in-hand record; `plan_write` turns the same rules into a
conditional write the store evaluates atomically, so concurrent requests for
one donation can only ever have a single winner.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping, NamedTuple

from foodbridge.core.exceptions import (
    ActorNotPermitted,
    CancellationWindowClosed,
    DonationError,
    DonationNotFound,
    InvalidTransitionError,
    PreconditionFailed,
)
from foodbridge.models.donation import (
    REVISION_FIELD,
    TERMINAL_STATUSES,
    Actor,
    Available,
    Cancelled,
    Collected,
    Donation,
    Requested,
    as_utc,
    format_timestamp,
    state_document,
)
from foodbridge.services.cancellation import is_within_window, window_cutoff


class LifecycleEvent(str, Enum):
    REQUEST = "request"
    CANCEL_REQUEST = "cancel_request"
    CANCEL_DONATION = "cancel_donation"
    MARK_COLLECTED = "mark_collected"
    DELETE = "delete"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


# Statuses each event may fire from
ALLOWED_FROM: dict[LifecycleEvent, frozenset[str]] = {
    LifecycleEvent.REQUEST: frozenset({"available"}),
    LifecycleEvent.CANCEL_REQUEST: frozenset({"requested"}),
    LifecycleEvent.CANCEL_DONATION: frozenset({"available", "requested"}),
    LifecycleEvent.MARK_COLLECTED: frozenset({"requested"}),
    LifecycleEvent.DELETE: TERMINAL_STATUSES,
}

NGO_ONLY_EVENTS = frozenset({LifecycleEvent.REQUEST, LifecycleEvent.MARK_COLLECTED})

ALREADY_REQUESTED_MESSAGE = "You already requested this donation."

CLAIM_LOST_MESSAGES = {
    "requested": "This item was just claimed by another NGO.",
    "collected": "This item has already been collected.",
    "cancelled": "This donation was cancelled by the donor.",
}


class Guard(NamedTuple):
    field: str
    op: Literal["eq", "in", "gt"]
    value: Any

    def holds(self, document: Mapping[str, Any]) -> bool:
        if self.field not in document:
            return False
        current = document[self.field]
        if self.op == "eq":
            return current == self.value
        if self.op == "in":
            return current in self.value
        if self.op == "gt":
            return current is not None and current > self.value
        raise ValueError(f"Unknown guard operator: {self.op}")


@dataclass(frozen=True)
class WritePlan:
    """
    A store-agnostic conditional mutation. `guards` is a disjunction of
    conjunctions: the write applies if every guard of any one clause holds.
    `increments` are added to the stored value (missing counts as zero).
    """
    donation_id: str
    event: LifecycleEvent
    guards: tuple[tuple[Guard, ...], ...]
    updates: dict[str, Any] = field(default_factory=dict)
    increments: dict[str, int] = field(default_factory=dict)
    delete: bool = False

    def allows(self, document: Mapping[str, Any] | None) -> bool:
        if document is None:
            return False
        return any(all(guard.holds(document) for guard in clause) for clause in self.guards)


@dataclass(frozen=True)
class TransitionResult:
    event: LifecycleEvent
    donation_id: str
    donation: Donation | None = None
    error: DonationError | None = None
    removed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> "TransitionResult":
        if self.error is not None:
            raise self.error
        return self

    @classmethod
    def failure(cls, event: LifecycleEvent, donation_id: str, error: DonationError) -> "TransitionResult":
        if error.donation_id is None:
            error.donation_id = donation_id
        return cls(event=event, donation_id=donation_id, error=error)


def _require_ngo(event: LifecycleEvent, actor: Actor) -> None:
    if event in NGO_ONLY_EVENTS and actor.role != "ngo":
        raise ActorNotPermitted(f"Only NGOs can {event.label} donations.")


def _next_state(donation: Donation, event: LifecycleEvent, actor: Actor, now: datetime):
    _require_ngo(event, actor)

    if donation.status not in ALLOWED_FROM[event]:
        if event is LifecycleEvent.REQUEST:
            if donation.requested_by == actor.actor_id:
                raise PreconditionFailed(ALREADY_REQUESTED_MESSAGE)
            raise PreconditionFailed(CLAIM_LOST_MESSAGES[donation.status])
        raise InvalidTransitionError(
            f"Cannot {event.label} a donation that is {donation.status}."
        )

    if event is LifecycleEvent.REQUEST:
        return Requested(
            requested_by=actor.actor_id,
            requested_by_name=actor.name,
            requested_at=now,
        )

    if event is LifecycleEvent.CANCEL_REQUEST:
        if actor.actor_id not in (donation.requested_by, donation.donor_id):
            raise ActorNotPermitted("Only the requesting NGO or the donor can cancel this request.")
        if not is_within_window(now, donation.requested_at):
            raise CancellationWindowClosed()
        return Available()

    if event is LifecycleEvent.CANCEL_DONATION:
        if actor.actor_id != donation.donor_id:
            raise ActorNotPermitted("Only the donor can cancel this donation.")
        return Cancelled(cancelled_at=now)

    if event is LifecycleEvent.MARK_COLLECTED:
        if actor.actor_id != donation.requested_by:
            raise ActorNotPermitted("Only the NGO that requested this donation can mark it collected.")
        return Collected(
            collected_by=actor.actor_id,
            collected_by_name=actor.name,
            collected_at=now,
        )

    # DELETE
    if actor.actor_id == donation.donor_id:
        return None
    if donation.status == "collected" and actor.actor_id == donation.collected_by:
        return None
    raise ActorNotPermitted("Only the donor or the NGO that collected it can delete this record.")


def apply_event(donation: Donation, event: LifecycleEvent | str, actor: Actor, now: datetime) -> TransitionResult:
    """
    Runs one event against an in-hand record. Content fields are never
    touched; only the state changes.
    """
    event = LifecycleEvent(event)
    now = as_utc(now)
    try:
        state = _next_state(donation, event, actor, now)
    except DonationError as e:
        return TransitionResult.failure(event, donation.donation_id, e)

    if event is LifecycleEvent.DELETE:
        return TransitionResult(event=event, donation_id=donation.donation_id, donation=donation, removed=True)
    return TransitionResult(event=event, donation_id=donation.donation_id, donation=donation.with_state(state))


def plan_write(donation_id: str, event: LifecycleEvent | str, actor: Actor, now: datetime) -> WritePlan:
    """
    Builds the conditional write for an event without reading the record.
    Raises ActorNotPermitted for events the actor's role can never trigger.
    """
    event = LifecycleEvent(event)
    now = as_utc(now)
    _require_ngo(event, actor)
    me = actor.actor_id

    if event is LifecycleEvent.REQUEST:
        return WritePlan(
            donation_id=donation_id,
            event=event,
            guards=((Guard("status", "eq", "available"),),),
            updates=state_document(Requested(
                requested_by=me,
                requested_by_name=actor.name,
                requested_at=now,
            )),
            increments={REVISION_FIELD: 1},
        )

    if event is LifecycleEvent.CANCEL_REQUEST:
        still_open = Guard("requested_at", "gt", format_timestamp(window_cutoff(now)))
        return WritePlan(
            donation_id=donation_id,
            event=event,
            guards=(
                (Guard("status", "eq", "requested"), Guard("requested_by", "eq", me), still_open),
                (Guard("status", "eq", "requested"), Guard("donor_id", "eq", me), still_open),
            ),
            updates=state_document(Available()),
            increments={REVISION_FIELD: 1},
        )

    if event is LifecycleEvent.CANCEL_DONATION:
        return WritePlan(
            donation_id=donation_id,
            event=event,
            guards=((
                Guard("status", "in", tuple(sorted(ALLOWED_FROM[event]))),
                Guard("donor_id", "eq", me),
            ),),
            updates=state_document(Cancelled(cancelled_at=now)),
            increments={REVISION_FIELD: 1},
        )

    if event is LifecycleEvent.MARK_COLLECTED:
        return WritePlan(
            donation_id=donation_id,
            event=event,
            guards=((Guard("status", "eq", "requested"), Guard("requested_by", "eq", me)),),
            updates=state_document(Collected(
                collected_by=me,
                collected_by_name=actor.name,
                collected_at=now,
            )),
            increments={REVISION_FIELD: 1},
        )

    return WritePlan(
        donation_id=donation_id,
        event=event,
        guards=(
            (Guard("status", "in", tuple(sorted(TERMINAL_STATUSES))), Guard("donor_id", "eq", me)),
            (Guard("status", "eq", "collected"), Guard("collected_by", "eq", me)),
        ),
        delete=True,
    )


def explain_rejection(
    current: Donation | None,
    event: LifecycleEvent | str,
    actor: Actor,
    now: datetime,
    donation_id: str,
) -> DonationError:
    """
    Says why a conditional write was refused, judged against the record the
    store held when it refused.
    """
    if current is None:
        return DonationNotFound(donation_id=donation_id)

    result = apply_event(current, event, actor, now)
    if result.ok:
        # Legal on the record we got back, so it moved under us
        return PreconditionFailed(
            "This donation changed while you were acting on it. Please refresh.",
            donation_id=donation_id,
        )
    return result.error
