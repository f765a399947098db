from fastapi import (
    APIRouter,
    Request,
    Depends,
    HTTPException,
    Response,
)
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPBearer
from pydantic import ValidationError as ClaimsError
from typing import AsyncIterator, Awaitable, Callable, Optional
import asyncio
import json
import logging

from foodbridge.api.schemas import CancelWindowResponse, CognitoUser, DonationResponse, StatsResponse
from foodbridge.core.config import get_settings
from foodbridge.core.dependencies import get_donation_gateway
from foodbridge.core.exceptions import (
    ActorNotPermitted,
    DonationError,
    DonationNotFound,
    InvalidTransitionError,
    PreconditionFailed,
    StoreError,
    ValidationError,
)
from foodbridge.models.donation import Actor, DonationDraft
from foodbridge.models.snapshot import DonationSnapshot
from foodbridge.services.cancellation import can_cancel_request
from foodbridge.services.donation_gateway import DonationGateway
from foodbridge.services.lifecycle import LifecycleEvent

router = APIRouter(prefix="/donations", tags=["donations"])
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0

# Most specific first
ERROR_STATUS_CODES = (
    (ValidationError, 422),
    (DonationNotFound, 404),
    (ActorNotPermitted, 403),
    (PreconditionFailed, 409),
    (InvalidTransitionError, 409),
    (StoreError, 503),
)

def http_error(error: DonationError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


async def get_current_actor(
    request: Request,
    token: Optional[str] = Depends(security)
) -> Actor:
    auth = request.scope.get("aws.event", {}).get("requestContext", {}).get("authorizer", {})
    claims = auth.get("claims", {})

    if not claims:
        raise HTTPException(status_code=401, detail="Could not find user claims")

    try:
        user = CognitoUser(**claims)
    except ClaimsError as e:
        raise HTTPException(
            status_code=401,
            detail=f"Invalid authentication credentials: {e}"
        )

    if not user.email_verified:
        raise HTTPException(status_code=403, detail="Email not verified")

    return Actor(actor_id=user.sub, name=user.name or user.email, role=user.role)


async def _current_snapshot(gateway: DonationGateway):
    try:
        return await gateway.refresh()
    except StoreError as e:
        raise http_error(e)

async def _transition(gateway: DonationGateway, donation_id: str, event: LifecycleEvent, actor: Actor) -> DonationResponse:
    try:
        result = await gateway.apply_transition(donation_id, event, actor)
    except StoreError as e:
        raise http_error(e)

    if not result.ok:
        raise http_error(result.error)
    return DonationResponse.from_donation(result.donation, gateway.clock())


@router.post("", response_model=DonationResponse, status_code=201)
async def post_donation(
    draft: DonationDraft,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    try:
        donation = await gateway.create(draft, actor)
    except DonationError as e:
        raise http_error(e)
    return DonationResponse.from_donation(donation, gateway.clock())


@router.get("", response_model=list[DonationResponse])
async def list_donations(
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    snapshot = await _current_snapshot(gateway)
    now = gateway.clock()
    return [DonationResponse.from_donation(d, now) for d in snapshot.donations]


@router.get("/available", response_model=list[DonationResponse])
async def list_available(
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    snapshot = await _current_snapshot(gateway)
    now = gateway.clock()
    return [DonationResponse.from_donation(d, now) for d in snapshot.available()]


@router.get("/mine", response_model=list[DonationResponse])
async def list_mine(
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    snapshot = await _current_snapshot(gateway)
    now = gateway.clock()
    if actor.role == "donor":
        mine = snapshot.by_donor(actor.actor_id)
    else:
        mine = snapshot.for_ngo(actor.actor_id)
    return [DonationResponse.from_donation(d, now) for d in mine]


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    snapshot = await _current_snapshot(gateway)
    if actor.role == "donor":
        stats = snapshot.donor_stats(actor.actor_id)
        return StatsResponse(
            role="donor",
            total_posted=stats.total_posted,
            available=stats.available,
            collected=stats.collected,
        )

    stats = snapshot.ngo_stats(actor.actor_id)
    return StatsResponse(
        role="ngo",
        meals_saved=stats.meals_saved,
        available=stats.available,
        pending_pickups=stats.pending_pickups,
    )


def _visible_to(snapshot: DonationSnapshot, actor: Actor):
    if actor.role == "donor":
        return snapshot.by_donor(actor.actor_id)
    return [d for d in snapshot.donations if d.in_available_pool or d.collected_by == actor.actor_id]

def snapshot_event(snapshot: DonationSnapshot, actor: Actor, now) -> str:
    payload = {
        "version": snapshot.version,
        "donations": [
            DonationResponse.from_donation(d, now).model_dump(mode="json")
            for d in _visible_to(snapshot, actor)
        ],
    }
    return f"event: snapshot\nid: {snapshot.version}\ndata: {json.dumps(payload)}\n\n"

async def snapshot_events(
    gateway: DonationGateway,
    subscription,
    queue: "asyncio.Queue[DonationSnapshot]",
    actor: Actor,
    disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Server-sent events for one subscription; cancels it when the client goes away."""
    try:
        while not await disconnected():
            try:
                snapshot = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield snapshot_event(snapshot, actor, gateway.clock())
    finally:
        subscription.cancel()


@router.get("/stream")
async def stream_donations(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    queue: asyncio.Queue[DonationSnapshot] = asyncio.Queue()
    try:
        subscription = await gateway.subscribe(queue.put_nowait)
    except StoreError as e:
        raise http_error(e)

    # Other clients' writes only show up through polling
    gateway.start_watching(get_settings().SNAPSHOT_POLL_SECONDS)
    logger.info(f"Streaming donation snapshots to {actor.actor_id}", extra={"actor_id": actor.actor_id})

    return StreamingResponse(
        snapshot_events(gateway, subscription, queue, actor, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.post("/{donation_id}/request", response_model=DonationResponse)
async def request_donation(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    return await _transition(gateway, donation_id, LifecycleEvent.REQUEST, actor)


@router.post("/{donation_id}/cancel-request", response_model=DonationResponse)
async def cancel_request(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    return await _transition(gateway, donation_id, LifecycleEvent.CANCEL_REQUEST, actor)


@router.post("/{donation_id}/cancel", response_model=DonationResponse)
async def cancel_donation(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    return await _transition(gateway, donation_id, LifecycleEvent.CANCEL_DONATION, actor)


@router.post("/{donation_id}/collect", response_model=DonationResponse)
async def collect_donation(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    return await _transition(gateway, donation_id, LifecycleEvent.MARK_COLLECTED, actor)


@router.delete("/{donation_id}", status_code=204)
async def delete_donation(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    await _transition(gateway, donation_id, LifecycleEvent.DELETE, actor)
    return Response(status_code=204)


@router.get("/{donation_id}/cancel-window", response_model=CancelWindowResponse)
async def get_cancel_window(
    donation_id: str,
    actor: Actor = Depends(get_current_actor),
    gateway: DonationGateway = Depends(get_donation_gateway),
):
    snapshot = await _current_snapshot(gateway)
    donation = snapshot.get(donation_id)
    if donation is None:
        raise http_error(DonationNotFound(donation_id=donation_id))

    now = gateway.clock()
    return CancelWindowResponse.for_request(
        donation_id=donation_id,
        requested_at=donation.requested_at,
        cancellable=can_cancel_request(donation, actor, now),
        now=now,
    )
