"""
Provider inbox synchronization.

Two background operations keep the local inbox in step with the provider:

- poll_once(): fetch page 1, store anything not already stored. Dedup is
  strict: same sender, same body and a stored ts within the dedup window of
  the provider time.
- run_backfill(): fetch up to N pages once, oldest first, with relaxed dedup
  (same sender and body, any time).

Both go through storage.insert_received_if_absent(), which queries the store
afresh for every record. Nothing is cached between runs, so the two may
interleave freely. The only accepted race is both observing the same remote
message before either commits it (at-least-once delivery).

SyncSession owns the timer and the delayed backfill for one user; SyncManager
owns the sessions.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from msgsync import storage
from msgsync.config import settings
from msgsync.metrics import record_sync_message, record_sync_tick
from msgsync.provider import ProviderClient, ProviderError
from msgsync.schemas import (
    BackfillSummary,
    InboundRecord,
    PollSummary,
    SyncStatusResponse,
)
from msgsync.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

SOURCE_POLL = "poll"
SOURCE_BACKFILL = "backfill"

SessionFactory = Callable[[], Session]


@dataclass
class ProviderCredentials:
    token: str
    phone_number: str


def resolve_token(db: Session) -> Optional[str]:
    row = storage.get_provider_settings(db)
    return (row.token if row is not None else None) or settings.PROVIDER_TOKEN


def resolve_credentials(db: Session) -> Optional[ProviderCredentials]:
    """
    Look up the provider token and originating number.

    The saved provider settings win; PROVIDER_TOKEN / PROVIDER_PHONE_NUMBER
    fill any gaps. Returns None unless both end up set.
    """
    row = storage.get_provider_settings(db)
    token = resolve_token(db)
    phone_number = (row.phone_number if row is not None else None) or settings.PROVIDER_PHONE_NUMBER
    if not token or not phone_number:
        return None
    return ProviderCredentials(token=token, phone_number=phone_number)


def _load_credentials(session_factory: SessionFactory) -> Optional[ProviderCredentials]:
    with session_factory() as db:
        return resolve_credentials(db)


def store_records(
    session_factory: SessionFactory,
    user_id: str,
    records: List[InboundRecord],
    source: str,
    window_seconds: Optional[int],
) -> int:
    """
    Insert every record not already stored.

    Blank bodies are skipped. A record that fails to persist is logged and
    the rest of the batch carries on.

    Returns:
        Number of newly stored messages
    """
    created = 0
    with session_factory() as db:
        for record in records:
            if not record.body.strip():
                record_sync_message(source, "empty")
                continue

            success, is_duplicate = storage.insert_received_if_absent(
                db,
                user_id=user_id,
                sender=record.sender,
                message=record.body,
                ts=record.time,
                window_seconds=window_seconds,
            )
            if not success:
                record_sync_message(source, "error")
            elif is_duplicate:
                record_sync_message(source, "duplicate")
            else:
                record_sync_message(source, "created")
                created += 1
                logger.info(
                    f"New message from {record.sender}: {record.body[:50]}",
                    extra={"user_id": user_id, "source": source},
                )
    return created


async def poll_once(
    client: ProviderClient,
    user_id: str,
    session_factory: SessionFactory = storage.SessionLocal,
    window_seconds: Optional[int] = None,
) -> PollSummary:
    """
    Run one poll tick against page 1 of the provider inbox.

    Missing credentials make the tick a silent no-op. Provider failures are
    logged and abandon the tick; nothing is raised.
    """
    if window_seconds is None:
        window_seconds = settings.DEDUP_WINDOW_SECONDS

    credentials = await asyncio.to_thread(_load_credentials, session_factory)
    if credentials is None:
        logger.debug("Provider not configured, skipping poll", extra={"user_id": user_id})
        record_sync_tick(SOURCE_POLL, "skipped")
        return PollSummary(outcome="skipped")

    try:
        records = await client.fetch_received_page(
            credentials.token, credentials.phone_number, page=1
        )
    except ProviderError as e:
        logger.warning(f"Poll failed: {e.message}", extra={"user_id": user_id})
        record_sync_tick(SOURCE_POLL, "failed")
        return PollSummary(outcome="failed")

    created = await asyncio.to_thread(
        store_records, session_factory, user_id, records, SOURCE_POLL, window_seconds
    )
    record_sync_tick(SOURCE_POLL, "ok")
    if created:
        logger.info(
            f"Poll stored {created} new messages",
            extra={"user_id": user_id, "records_seen": len(records)},
        )
    return PollSummary(outcome="ok", records_seen=len(records), new_messages=created)


async def run_backfill(
    client: ProviderClient,
    user_id: str,
    session_factory: SessionFactory = storage.SessionLocal,
    max_pages: Optional[int] = None,
    page_delay: Optional[float] = None,
) -> Optional[BackfillSummary]:
    """
    Fetch up to max_pages inbox pages and store what is missing.

    Fetching stops at the first page with no records (history exhausted) or
    at the first failed page, which is not retried. Records from every page
    fetched so far are then stored oldest first using relaxed dedup.

    Returns:
        BackfillSummary, or None when the provider is not configured
    """
    if max_pages is None:
        max_pages = settings.BACKFILL_MAX_PAGES
    if page_delay is None:
        page_delay = settings.BACKFILL_PAGE_DELAY_SECONDS

    credentials = await asyncio.to_thread(_load_credentials, session_factory)
    if credentials is None:
        logger.debug("Provider not configured, skipping backfill", extra={"user_id": user_id})
        record_sync_tick(SOURCE_BACKFILL, "skipped")
        return None

    collected: List[InboundRecord] = []
    pages_fetched = 0
    completed = True

    for page in range(1, max_pages + 1):
        if page > 1:
            await asyncio.sleep(page_delay)
        try:
            records = await client.fetch_received_page(
                credentials.token, credentials.phone_number, page=page
            )
        except ProviderError as e:
            logger.warning(
                f"Backfill page {page} failed: {e.message}",
                extra={"user_id": user_id, "page": page},
            )
            completed = False
            break

        if not records:
            logger.info(f"Backfill page {page}: no messages", extra={"user_id": user_id, "page": page})
            break

        logger.info(
            f"Backfill page {page}: {len(records)} messages",
            extra={"user_id": user_id, "page": page},
        )
        pages_fetched += 1
        collected.extend(records)

    collected.sort(key=lambda record: record.time)
    created = await asyncio.to_thread(
        store_records, session_factory, user_id, collected, SOURCE_BACKFILL, None
    )

    summary = BackfillSummary(
        pages_fetched=pages_fetched,
        records_seen=len(collected),
        new_messages=created,
        completed=completed,
        finished_at=format_ts(utc_now()),
    )
    record_sync_tick(SOURCE_BACKFILL, "ok" if completed else "failed")
    logger.info(
        "Backfill complete",
        extra={
            "user_id": user_id,
            "pages_fetched": pages_fetched,
            "new_messages": created,
            "completed": completed,
        },
    )
    return summary


class SyncSession:
    """
    Background sync for one user.

    start() schedules two tasks: a timer that fires a poll tick every
    poll_interval seconds, and a backfill that runs once after
    backfill_delay seconds. A tick that fires while the previous one is
    still running is skipped. stop() cancels everything still pending.
    """

    def __init__(
        self,
        user_id: str,
        client: ProviderClient,
        session_factory: SessionFactory = storage.SessionLocal,
        poll_interval: Optional[float] = None,
        backfill_delay: Optional[float] = None,
        max_pages: Optional[int] = None,
        page_delay: Optional[float] = None,
        window_seconds: Optional[int] = None,
    ):
        self.user_id = user_id
        self.client = client
        self.session_factory = session_factory
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self.backfill_delay = backfill_delay if backfill_delay is not None else settings.BACKFILL_DELAY_SECONDS
        self.max_pages = max_pages
        self.page_delay = page_delay
        self.window_seconds = window_seconds

        self.ticks = 0
        self.skipped_ticks = 0
        self.last_poll: Optional[PollSummary] = None
        self.backfill: Optional[BackfillSummary] = None

        self._timer_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._backfill_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def start(self) -> None:
        """Schedule the poll timer and the delayed backfill. Needs a running loop."""
        if self.running:
            return
        self._timer_task = asyncio.create_task(self._timer_loop(), name=f"poll:{self.user_id}")
        self._backfill_task = asyncio.create_task(
            self._delayed_backfill(), name=f"backfill:{self.user_id}"
        )
        logger.info(
            "Sync session started",
            extra={"user_id": self.user_id, "poll_interval": self.poll_interval},
        )

    async def stop(self) -> None:
        tasks = [
            task
            for task in (self._timer_task, self._tick_task, self._backfill_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None
        self._tick_task = None
        self._backfill_task = None
        logger.info("Sync session stopped", extra={"user_id": self.user_id})

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self._fire_tick()

    def _fire_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self.skipped_ticks += 1
            record_sync_tick(SOURCE_POLL, "overlapped")
            logger.debug("Previous poll still running, skipping tick", extra={"user_id": self.user_id})
            return
        self._start_tick()

    def _start_tick(self) -> asyncio.Task:
        self._tick_task = asyncio.create_task(self.tick(), name=f"tick:{self.user_id}")
        return self._tick_task

    async def poll_now(self) -> PollSummary:
        """
        Poll immediately, or join the tick already in flight.

        Shielded so a caller that goes away does not cancel the shared tick.
        """
        task = self._tick_task
        if task is None or task.done():
            task = self._start_tick()
        return await asyncio.shield(task)

    async def tick(self) -> PollSummary:
        """Run one poll. Unexpected errors are logged and end only this tick."""
        self.ticks += 1
        try:
            summary = await poll_once(
                self.client,
                self.user_id,
                session_factory=self.session_factory,
                window_seconds=self.window_seconds,
            )
        except Exception:
            logger.exception("Poll tick failed", extra={"user_id": self.user_id})
            record_sync_tick(SOURCE_POLL, "failed")
            summary = PollSummary(outcome="failed")
        self.last_poll = summary
        return summary

    async def _delayed_backfill(self) -> None:
        await asyncio.sleep(self.backfill_delay)
        try:
            self.backfill = await run_backfill(
                self.client,
                self.user_id,
                session_factory=self.session_factory,
                max_pages=self.max_pages,
                page_delay=self.page_delay,
            )
        except Exception:
            logger.exception("Backfill failed", extra={"user_id": self.user_id})
            record_sync_tick(SOURCE_BACKFILL, "failed")

    def status(self) -> SyncStatusResponse:
        return SyncStatusResponse(
            user_id=self.user_id,
            running=self.running,
            ticks=self.ticks,
            skipped_ticks=self.skipped_ticks,
            last_poll=self.last_poll,
            backfill=self.backfill,
        )


class SyncManager:
    """
    Owns one SyncSession per user and the shared provider client.

    The provider client is created lazily inside the running event loop and
    closed by stop_all().
    """

    def __init__(
        self,
        client_factory: Callable[[], ProviderClient] = ProviderClient,
        session_factory: SessionFactory = storage.SessionLocal,
        **session_options,
    ):
        self.client_factory = client_factory
        self.session_factory = session_factory
        self.session_options = session_options
        self.sessions: Dict[str, SyncSession] = {}
        self._client: Optional[ProviderClient] = None

    @property
    def client(self) -> ProviderClient:
        if self._client is None:
            self._client = self.client_factory()
        return self._client

    def get(self, user_id: str) -> Optional[SyncSession]:
        return self.sessions.get(user_id)

    def start(self, user_id: str) -> SyncSession:
        session = self.sessions.get(user_id)
        if session is None:
            session = SyncSession(
                user_id,
                self.client,
                session_factory=self.session_factory,
                **self.session_options,
            )
            self.sessions[user_id] = session
        session.start()
        return session

    async def stop(self, user_id: str) -> bool:
        session = self.sessions.pop(user_id, None)
        if session is None:
            return False
        await session.stop()
        return True

    async def poll_now(self, user_id: str) -> PollSummary:
        """Run one tick immediately, through the user's session when there is one."""
        session = self.sessions.get(user_id)
        if session is not None:
            return await session.poll_now()
        return await poll_once(
            self.client,
            user_id,
            session_factory=self.session_factory,
            window_seconds=self.session_options.get("window_seconds"),
        )

    async def stop_all(self) -> None:
        for user_id in list(self.sessions):
            await self.stop(user_id)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
