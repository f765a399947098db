import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from foodbridge.core.exceptions import ConditionFailed, DonationError, StoreError
from foodbridge.models.donation import Actor, Donation, DonationDraft, utc_now
from foodbridge.models.snapshot import DonationSnapshot
from foodbridge.services.lifecycle import (
    LifecycleEvent,
    TransitionResult,
    explain_rejection,
    plan_write,
)

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[DonationSnapshot], Any]


class Subscription:
    """Handle returned by `DonationGateway.subscribe`; call `cancel()` to stop updates."""

    def __init__(self, gateway: "DonationGateway", callback: SnapshotCallback):
        self._gateway = gateway
        self._callback = callback
        self.active = True
        self.last_version = -1

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._gateway._unsubscribe(self)

    def _deliver(self, snapshot: DonationSnapshot) -> None:
        # Never hand out an older snapshot after a newer one
        if not self.active or snapshot.version <= self.last_version:
            return
        self.last_version = snapshot.version

        try:
            result = self._callback(snapshot)
        except Exception:
            logger.exception("Donation subscriber raised while handling a snapshot")
            return

        if inspect.isawaitable(result):
            self._gateway._track(asyncio.ensure_future(result))


class DonationGateway:
    """
    Turns lifecycle events into conditional writes against a donation store
    and keeps subscribers fed with fresh snapshots of the whole collection.

    Mutations never read-then-write: the store decides atomically whether a
    write's guards hold, and only a refused write is explained by re-reading.
    """

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self._subscriptions: set[Subscription] = set()
        self._tasks: set[asyncio.Future] = set()
        self._fetch_seq = 0
        self._latest: DonationSnapshot | None = None
        # Last revision of every record seen deleted; ids are never reused
        self._removed: dict[str, int] = {}
        self._watcher: asyncio.Task | None = None

    @property
    def latest(self) -> DonationSnapshot | None:
        return self._latest

    async def create(self, draft: DonationDraft | Mapping[str, Any], donor: Actor) -> Donation:
        donation = Donation.post(
            draft,
            donor,
            donation_id=self.store.new_id(),
            now=self.clock(),
        )
        await asyncio.to_thread(self.store.put_new, donation.to_document())

        logger.info(
            f"Donor {donor.actor_id} posted donation {donation.donation_id} "
            f"({len(donation.items)} items, {donation.weight} kg)",
            extra={"donation_id": donation.donation_id, "actor_id": donor.actor_id},
        )
        await self._refresh_after_write()
        return donation

    async def apply_transition(
        self,
        donation_id: str,
        event: LifecycleEvent | str,
        actor: Actor,
    ) -> TransitionResult:
        event = LifecycleEvent(event)
        now = self.clock()
        log_extra = {"donation_id": donation_id, "event": event.value, "actor_id": actor.actor_id}

        try:
            plan = plan_write(donation_id, event, actor, now)
        except DonationError as e:
            logger.info(f"Rejected {event.label} by {actor.actor_id}: {e.message}", extra=log_extra)
            return TransitionResult.failure(event, donation_id, e)

        try:
            if plan.delete:
                document = await asyncio.to_thread(self.store.conditional_delete, donation_id, plan)
            else:
                document = await asyncio.to_thread(self.store.conditional_update, donation_id, plan)
        except ConditionFailed as e:
            current = Donation.from_document(e.current) if e.current else None
            error = explain_rejection(current, event, actor, now, donation_id)
            logger.info(
                f"Refused {event.label} on donation {donation_id} by {actor.actor_id}: "
                f"{type(error).__name__}",
                extra=log_extra,
            )
            return TransitionResult.failure(event, donation_id, error)

        donation = Donation.from_document(document)
        if plan.delete:
            self._removed[donation_id] = donation.revision
        logger.info(f"Applied {event.label} on donation {donation_id}", extra=log_extra)
        await self._refresh_after_write()

        return TransitionResult(
            event=event,
            donation_id=donation_id,
            donation=donation,
            removed=plan.delete,
        )

    async def request(self, donation_id: str, ngo: Actor) -> TransitionResult:
        return await self.apply_transition(donation_id, LifecycleEvent.REQUEST, ngo)

    async def cancel_request(self, donation_id: str, actor: Actor) -> TransitionResult:
        return await self.apply_transition(donation_id, LifecycleEvent.CANCEL_REQUEST, actor)

    async def cancel_donation(self, donation_id: str, donor: Actor) -> TransitionResult:
        return await self.apply_transition(donation_id, LifecycleEvent.CANCEL_DONATION, donor)

    async def mark_collected(self, donation_id: str, ngo: Actor) -> TransitionResult:
        return await self.apply_transition(donation_id, LifecycleEvent.MARK_COLLECTED, ngo)

    async def delete(self, donation_id: str, actor: Actor) -> TransitionResult:
        return await self.apply_transition(donation_id, LifecycleEvent.DELETE, actor)

    async def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """
        Registers `callback` and fetches the current collection for it.
        Snapshots are delivered on a later loop iteration, never inline.
        """
        subscription = Subscription(self, callback)
        self._subscriptions.add(subscription)
        try:
            await self.refresh()
        except StoreError:
            subscription.cancel()
            raise
        # The fetch above may have been superseded by a newer one already out
        asyncio.get_running_loop().call_soon(subscription._deliver, self._latest)
        return subscription

    async def refresh(self) -> DonationSnapshot:
        self._fetch_seq += 1
        version = self._fetch_seq
        documents = await self._fetch_documents()
        fetched = DonationSnapshot.from_documents(version, self.clock(), documents)

        if self._latest is not None and self._latest.version > version:
            logger.debug(f"Dropping snapshot {version}, {self._latest.version} already published")
            return self._latest

        snapshot = self._reconcile(fetched)
        self._latest = snapshot
        self._publish(snapshot)
        return snapshot

    async def watch(self, interval: float = 5.0) -> None:
        """Polls the store so changes made by other clients reach subscribers."""
        while True:
            try:
                await self.refresh()
            except StoreError as e:
                logger.warning(f"Snapshot refresh failed, next attempt in {interval}s: {e.message}")
            await asyncio.sleep(interval)

    def start_watching(self, interval: float) -> asyncio.Task:
        """
        Starts `watch` in the background unless it already runs. It stops by
        itself once the last subscription is cancelled.
        """
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.create_task(self.watch(interval))
        return self._watcher

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._stop_watching()

    def _stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        if not self._subscriptions:
            self._stop_watching()

    def _reconcile(self, fetched: DonationSnapshot) -> DonationSnapshot:
        """
        Merges a fresh listing with what was last published. The listing comes
        from an eventually consistent index and may hold older images, so each
        record keeps whichever image has the higher revision. A record that has
        dropped out of the listing is treated as deleted and stays gone.
        """
        published = {d.donation_id: d for d in self._latest.donations} if self._latest else {}
        fetched_ids = {d.donation_id for d in fetched.donations}

        for donation_id, known in published.items():
            if donation_id not in fetched_ids:
                self._removed[donation_id] = max(self._removed.get(donation_id, 0), known.revision)

        donations = []
        for donation in fetched.donations:
            if donation.revision <= self._removed.get(donation.donation_id, 0):
                logger.debug(
                    f"Ignoring stale image of removed donation {donation.donation_id}",
                    extra={"donation_id": donation.donation_id},
                )
                continue
            known = published.get(donation.donation_id)
            if known is not None and known.revision > donation.revision:
                logger.debug(
                    f"Keeping revision {known.revision} of donation {donation.donation_id} "
                    f"over stale revision {donation.revision}",
                    extra={"donation_id": donation.donation_id},
                )
                donation = known
            donations.append(donation)

        return fetched.model_copy(update={"donations": tuple(donations)})

    @retry(
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(StoreError),
        reraise=True,
    )
    async def _fetch_documents(self) -> list[dict]:
        return await asyncio.to_thread(self.store.list_all)

    async def _refresh_after_write(self) -> None:
        if not self._subscriptions:
            return
        try:
            await self.refresh()
        except StoreError as e:
            # The write itself succeeded; the next refresh will pick it up
            logger.warning(f"Could not refresh subscribers after write: {e.message}")

    def _publish(self, snapshot: DonationSnapshot) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            loop.call_soon(subscription._deliver, snapshot)

    def _track(self, future: asyncio.Future) -> None:
        self._tasks.add(future)
        future.add_done_callback(self._task_done)

    def _task_done(self, future: asyncio.Future) -> None:
        self._tasks.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Async donation subscriber failed", exc_info=future.exception())
