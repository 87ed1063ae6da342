"""Sync orchestrator: fetch, parse, normalize, filter and persist calendar feeds."""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import urlparse

from fetcher.feed_fetcher import FeedFetcher
from processor.date_window import compute_sync_window, filter_events
from processor.event_normalizer import EventNormalizer
from processor.ics_parser import parse_feed
from processor.models import (
    CalendarSource,
    NormalizedEvent,
    SyncOutcome,
    SyncStatus,
    format_timestamp,
    utc_now,
)
from storage.document_store import DELETE_FIELD, DocumentStoreError
from sync.errors import InvalidCalendarError, StorageError, SyncError

logger = logging.getLogger(__name__)

CALENDARS_COLLECTION = 'calendars'
SUPPORTED_SCHEMES = ('http', 'https', 'webcal')


class CalendarSyncService:
    """Runs calendar feed syncs against a document store."""

    def __init__(
        self,
        store,
        fetcher: Optional[FeedFetcher] = None,
        normalizer: Optional[EventNormalizer] = None,
        max_retries: int = 2,
        backoff_seconds: float = 1
    ):
        """
        Initialize the sync service.

        Args:
            store: Gateway exposing get_document and update_document
            fetcher: Feed fetcher (default: FeedFetcher with a 30s timeout)
            normalizer: Event normalizer
            max_retries: Additional attempts after a retryable failure
            backoff_seconds: Linear backoff unit between attempts
        """
        self.store = store
        self.fetcher = fetcher or FeedFetcher()
        self.normalizer = normalizer or EventNormalizer()
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    def register_calendar(
        self,
        name: str,
        feed_address: str,
        calendar_id: Optional[str] = None
    ) -> CalendarSource:
        """
        Validate and store a new calendar with a pending sync status.

        Raises:
            InvalidCalendarError: If the name or feed address is unusable
        """
        name = (name or '').strip()
        feed_address = (feed_address or '').strip()
        if not name:
            raise InvalidCalendarError("Calendar name is required")
        if not feed_address:
            raise InvalidCalendarError("Calendar address is required")

        parsed = urlparse(feed_address)
        if parsed.scheme.lower() not in SUPPORTED_SCHEMES or not parsed.netloc:
            raise InvalidCalendarError(f"Invalid calendar address: {feed_address}")

        calendar_id = calendar_id or uuid.uuid4().hex
        now = format_timestamp(utc_now())
        self.store.update_document(CALENDARS_COLLECTION, calendar_id, {
            'calendarId': calendar_id,
            'name': name,
            'source': {'calendarAddress': feed_address},
            'sync': {'syncStatus': SyncStatus.PENDING.value},
            'createdAt': now,
            'updatedAt': now
        })
        logger.info(
            f"Registered calendar '{name}'",
            extra={'calendar_id': calendar_id}
        )
        return CalendarSource(
            calendar_id=calendar_id,
            name=name,
            feed_address=feed_address
        )

    def sync_calendar_by_id(self, calendar_id: str) -> Dict[str, Any]:
        """
        Sync one stored calendar.

        Returns:
            Dict with success and eventCount, or error and retryable
        """
        try:
            document = self.store.get_document(CALENDARS_COLLECTION, calendar_id)
            if document is None:
                logger.warning(
                    f"Calendar not found: {calendar_id}",
                    extra={'calendar_id': calendar_id}
                )
                return SyncOutcome(
                    success=False,
                    error=f"Calendar not found: {calendar_id}",
                    retryable=False
                ).to_dict()

            source = CalendarSource.from_document(
                {'calendarId': calendar_id, **document}
            )
            if source is None:
                return SyncOutcome(
                    success=False,
                    error=f"Calendar {calendar_id} has no feed address",
                    retryable=False
                ).to_dict()

            return self.sync_calendar(source).to_dict()

        except DocumentStoreError as e:
            logger.error(
                f"Storage failure while syncing calendar {calendar_id}: {e}",
                extra={'calendar_id': calendar_id},
                exc_info=True
            )
            return SyncOutcome(success=False, error=str(e), retryable=False).to_dict()

    def sync_all_calendars(self, calendar_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """
        Sync several calendars concurrently, one worker per calendar.

        A failure in one calendar never affects the others.
        """
        calendar_ids = list(dict.fromkeys(calendar_ids))
        if not calendar_ids:
            return {}

        results = {}
        with ThreadPoolExecutor(
            max_workers=len(calendar_ids),
            thread_name_prefix='calendar-sync'
        ) as executor:
            futures = {
                calendar_id: executor.submit(self.sync_calendar_by_id, calendar_id)
                for calendar_id in calendar_ids
            }
            for calendar_id, future in futures.items():
                try:
                    results[calendar_id] = future.result()
                except Exception as e:
                    logger.error(
                        f"Unexpected failure syncing calendar {calendar_id}: {e}",
                        extra={'calendar_id': calendar_id},
                        exc_info=True
                    )
                    results[calendar_id] = SyncOutcome(
                        success=False, error=str(e), retryable=False
                    ).to_dict()

        succeeded = sum(1 for result in results.values() if result['success'])
        logger.info(f"Synced {succeeded} of {len(results)} calendars")
        return results

    def sync_calendar(self, source: CalendarSource) -> SyncOutcome:
        """
        Sync one calendar with retries.

        On success the calendar's events map is fully replaced; on terminal
        failure only the sync status is written and stored events are kept.
        """
        date_range = compute_sync_window()
        total_attempts = max(self.max_retries, 0) + 1
        extra = {'calendar_id': source.calendar_id}

        for attempt in range(1, total_attempts + 1):
            try:
                self._write_status(source.calendar_id, SyncStatus.SYNCING)
                logger.info(
                    f"Syncing calendar '{source.name}' "
                    f"(attempt {attempt}/{total_attempts})",
                    extra=extra
                )

                raw_text = self.fetcher.fetch(source.feed_address)
                bags = parse_feed(raw_text)
                events = self.normalizer.normalize_events(bags, source.calendar_id)
                events = filter_events(events, date_range)

                self._write_success(source.calendar_id, events)

            except DocumentStoreError as e:
                return self._finalize_error(
                    source, StorageError(f"Failed to store sync result: {e}")
                )

            except SyncError as e:
                if e.retryable and attempt < total_attempts:
                    delay = self.backoff_seconds * attempt
                    logger.warning(
                        f"Sync attempt {attempt}/{total_attempts} failed: {e}. "
                        f"Retrying in {delay} seconds...",
                        extra={**extra, 'error_type': e.error_type.value}
                    )
                    time.sleep(delay)
                    continue

                return self._finalize_error(source, e)

            logger.info(
                f"Calendar synced: '{source.name}' ({len(events)} events)",
                extra=extra
            )
            return SyncOutcome(success=True, event_count=len(events))

    def _finalize_error(self, source: CalendarSource, error: SyncError) -> SyncOutcome:
        """Record a terminal error status and build the failed outcome."""
        extra = {'calendar_id': source.calendar_id, 'error_type': error.error_type.value}
        logger.error(f"Sync failed for calendar '{source.name}': {error}", extra=extra)

        try:
            self._write_error(source.calendar_id, error)
        except DocumentStoreError as e:
            logger.error(
                f"Could not record error status for calendar '{source.name}': {e}",
                extra=extra,
                exc_info=True
            )

        return SyncOutcome(
            success=False,
            error=str(error),
            retryable=error.retryable
        )

    @contextmanager
    def _calendar_lock(self, calendar_id: str) -> Iterator[None]:
        """Serialize final writes per calendar; the entry is dropped once unused."""
        with self._locks_guard:
            entry = self._locks.setdefault(calendar_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[calendar_id]

    def _write_status(self, calendar_id: str, status: SyncStatus) -> None:
        now = format_timestamp(utc_now())
        self.store.update_document(CALENDARS_COLLECTION, calendar_id, {
            'sync.syncStatus': status.value,
            'sync.lastSyncedAt': now,
            'updatedAt': now
        })

    def _write_success(
        self,
        calendar_id: str,
        events: Dict[str, NormalizedEvent]
    ) -> None:
        now = format_timestamp(utc_now())
        with self._calendar_lock(calendar_id):
            self.store.update_document(CALENDARS_COLLECTION, calendar_id, {
                'events': {
                    event_id: event.to_document()
                    for event_id, event in events.items()
                },
                'sync.syncStatus': SyncStatus.SUCCESS.value,
                'sync.lastSyncedAt': now,
                'sync.errorMessage': DELETE_FIELD,
                'sync.errorType': DELETE_FIELD,
                'sync.retryable': DELETE_FIELD,
                'updatedAt': now
            })

    def _write_error(self, calendar_id: str, error: SyncError) -> None:
        now = format_timestamp(utc_now())
        with self._calendar_lock(calendar_id):
            self.store.update_document(CALENDARS_COLLECTION, calendar_id, {
                'sync.syncStatus': SyncStatus.ERROR.value,
                'sync.lastSyncedAt': now,
                'sync.errorMessage': str(error),
                'sync.errorType': error.error_type.value,
                'sync.retryable': error.retryable,
                'updatedAt': now
            })
