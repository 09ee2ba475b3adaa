"""
Event poller: pulls access events from the provider's message queue, one
long-lived task per branch.

Cycle:  IDLE → POLLING → (PROCESSING → ACKNOWLEDGING) → IDLE
        IDLE → POLLING → IDLE                              (empty result)

The offset is acknowledged only for messages every consumer accepted, and the
local EventOffset row is written only after the provider took the ack. If the
ack fails, the provider serves the same messages again and the pipeline's
eventId dedup absorbs them.

Each cycle also replays stored events still waiting for a consumer, and a
subscription the queue refuses is replaced once before the cycle gives up.

A failed cycle is logged and the loop carries on at the next interval.
"""

import asyncio
import contextlib
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.exceptions import (
    AuthError, CredentialError, PollFailedError, ProviderError, ProviderUnavailableError, TokenExpiredError,
)
from app.models.credential import ProviderCredential
from app.models.event_offset import EventOffset
from app.services.branch_router import BranchDeviceRouter
from app.services.credential_store import list_active_credentials, require_active_credential
from app.services.event_parser import parse_queue_messages
from app.services.event_pipeline import EventPipeline, IngestResult, contiguous_ack_offset, event_pipeline
from app.utils.logger import get_logger

logger = get_logger(__name__)


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    ACKNOWLEDGING = "acknowledging"


def _message_offset(message: Any) -> Optional[int]:
    if not isinstance(message, dict):
        return None
    try:
        return int(message["offset"])
    except (KeyError, TypeError, ValueError):
        return None


def _stored_offset(row: Optional[EventOffset], subscription_id: str) -> Optional[int]:
    """The stored offset, if it belongs to this subscription."""
    if row is not None and row.subscription_id == subscription_id:
        return row.last_offset
    return None


def _subscription_rejected(error: ProviderError) -> bool:
    """A vendor-level refusal of the queue call, as opposed to a transport or auth failure."""
    if isinstance(error, (ProviderUnavailableError, TokenExpiredError)):
        return False
    return error.status in (400, 404)


class BranchPoller:
    def __init__(self, branch_id: str,
                 router: Optional[BranchDeviceRouter] = None,
                 pipeline: Optional[EventPipeline] = None,
                 session_factory: Callable[[], Session] = SessionLocal,
                 interval: Optional[float] = None,
                 max_messages: Optional[int] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.branch_id = branch_id
        self.router = router or BranchDeviceRouter()
        self.pipeline = pipeline or event_pipeline
        self.session_factory = session_factory
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.max_messages = max_messages or settings.POLL_MAX_MESSAGES
        self._sleep = sleep

        self.state = PollState.IDLE
        self.last_offset: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_poll_at: Optional[datetime] = None

        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._cycle_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the loop. No-op if it is already running."""
        if self.running:
            logger.debug(f"Poller for branch {self.branch_id} already running")
            return
        self._cancelled = False
        self._task = asyncio.create_task(self._run(), name=f"poller-{self.branch_id}")
        logger.info(f"Event polling started for branch {self.branch_id} (every {self.interval}s)")

    async def stop(self):
        """Stop the loop. Safe from any state; nothing is delivered after it returns."""
        self._cancelled = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info(f"Event polling stopped for branch {self.branch_id}")
        self.state = PollState.IDLE

    async def _run(self):
        while not self._cancelled:
            try:
                await self.poll_once()
            except PollFailedError as e:
                self.last_error = e.reason
                logger.error(f"Poll failed for branch {self.branch_id} after offset {e.offset}: {e.reason}")
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Unexpected poll error for branch {self.branch_id}: {e}", exc_info=True)
            if self._cancelled:
                break
            await self._sleep(self.interval)

    async def poll_once(self) -> Optional[IngestResult]:
        """
        Run one cycle. Returns the ingest result, or None when the poller was
        stopped before delivering anything.
        """
        async with self._cycle_lock:
            if self._cancelled:
                return None
            db = self.session_factory()
            after: Optional[int] = None
            try:
                credential = require_active_credential(db, self.branch_id)
                offset_row = (db.query(EventOffset)
                              .filter(EventOffset.branch_id == self.branch_id)
                              .first())

                self.state = PollState.POLLING
                subscription_id = await self._ensure_subscription(db, credential)
                after = _stored_offset(offset_row, subscription_id)
                try:
                    messages = await self._fetch(credential, subscription_id, after)
                except ProviderError as e:
                    if not _subscription_rejected(e):
                        raise
                    logger.warning(f"Subscription {subscription_id} rejected for branch {self.branch_id} "
                                   f"({e}), subscribing again")
                    credential.subscription_id = None
                    subscription_id = await self._ensure_subscription(db, credential)
                    after = _stored_offset(offset_row, subscription_id)
                    messages = await self._fetch(credential, subscription_id, after)
                self.last_offset = after
                self.last_poll_at = datetime.utcnow()
                if self._cancelled:
                    return None

                # Stored events still waiting for a consumer (e.g. webhook pushes answered RETRY)
                if self.pipeline.has_pending(db, self.branch_id):
                    self.state = PollState.PROCESSING
                    await self.pipeline.replay_pending(db, self.branch_id)
                    if self._cancelled:
                        return None

                messages = [m for m in messages
                            if after is None or _message_offset(m) is None or _message_offset(m) > after]
                if not messages:
                    self.last_error = None
                    return IngestResult()

                self.state = PollState.PROCESSING
                events, rejected = parse_queue_messages(messages, self.branch_id)
                result = await self.pipeline.ingest(db, events, source="poll")
                if self._cancelled:
                    return result

                ack = contiguous_ack_offset([_message_offset(m) for m in messages], result.failed_offsets)
                if ack is not None and (after is None or ack > after):
                    self.state = PollState.ACKNOWLEDGING
                    await self.router.call_with_credential(
                        credential, lambda client: client.acknowledge_offset(subscription_id, ack)
                    )
                    self._save_offset(db, offset_row, subscription_id, ack)
                    self.last_offset = ack

                logger.info(f"Poll for branch {self.branch_id}: {len(messages)} messages, "
                            f"{len(result.accepted)} processed, {len(result.failed)} pending, "
                            f"{rejected} rejected, offset={self.last_offset}")
                self.last_error = None
                return result

            except (ProviderError, AuthError, CredentialError) as e:
                db.rollback()
                raise PollFailedError(self.branch_id, after, str(e)) from e
            finally:
                self.state = PollState.IDLE
                db.close()

    async def _fetch(self, credential: ProviderCredential, subscription_id: str,
                     after: Optional[int]) -> list[dict]:
        return await self.router.call_with_credential(
            credential,
            lambda client: client.fetch_messages(subscription_id, after, self.max_messages),
        )

    async def _ensure_subscription(self, db: Session, credential: ProviderCredential) -> str:
        if credential.subscription_id:
            return credential.subscription_id
        subscription_id = await self.router.call_with_credential(
            credential, lambda client: client.subscribe(settings.EVENT_SUBSCRIPTION_TYPES)
        )
        credential.subscription_id = subscription_id
        credential.updated_at = datetime.utcnow()
        db.commit()
        logger.info(f"Subscribed branch {self.branch_id} to {settings.EVENT_SUBSCRIPTION_TYPES}: {subscription_id}")
        return subscription_id

    def _save_offset(self, db: Session, row: Optional[EventOffset], subscription_id: str, offset: int):
        if row is None:
            row = EventOffset(branch_id=self.branch_id)
            db.add(row)
        row.subscription_id = subscription_id
        row.last_offset = offset
        row.updated_at = datetime.utcnow()
        db.commit()

    def status(self) -> dict:
        return {
            "branch_id": self.branch_id,
            "state": self.state.value,
            "running": self.running,
            "last_offset": self.last_offset,
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at,
        }


class PollerSupervisor:
    """Owns one BranchPoller per branch."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 router: Optional[BranchDeviceRouter] = None,
                 pipeline: Optional[EventPipeline] = None,
                 interval: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.session_factory = session_factory
        self.router = router
        self.pipeline = pipeline
        self.interval = interval
        self.sleep = sleep
        self._pollers: dict[str, BranchPoller] = {}

    def get(self, branch_id: str) -> Optional[BranchPoller]:
        return self._pollers.get(branch_id)

    def poller(self, branch_id: str) -> BranchPoller:
        poller = self._pollers.get(branch_id)
        if poller is None:
            poller = BranchPoller(branch_id, router=self.router, pipeline=self.pipeline,
                                  session_factory=self.session_factory, interval=self.interval,
                                  sleep=self.sleep)
            self._pollers[branch_id] = poller
        return poller

    def start(self, branch_id: str) -> BranchPoller:
        poller = self.poller(branch_id)
        poller.start()
        return poller

    async def stop(self, branch_id: str) -> bool:
        poller = self._pollers.get(branch_id)
        if poller is None:
            return False
        await poller.stop()
        return True

    def start_all_active(self) -> list[str]:
        db = self.session_factory()
        try:
            branch_ids = [c.branch_id for c in list_active_credentials(db)]
        finally:
            db.close()
        for branch_id in branch_ids:
            self.start(branch_id)
        if not branch_ids:
            logger.warning("No active provider credentials, event polling idle")
        return branch_ids

    async def stop_all(self):
        await asyncio.gather(*(p.stop() for p in self._pollers.values()))

    def status(self) -> list[dict]:
        return [p.status() for _, p in sorted(self._pollers.items())]


poller_supervisor = PollerSupervisor()
