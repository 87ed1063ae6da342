"""Unit tests for CalendarSyncService."""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, call, patch

import pytest

from processor.models import CalendarSource
from storage.document_store import DELETE_FIELD, DocumentStoreError
from sync.calendar_sync import CalendarSyncService
from sync.errors import InvalidCalendarError, NetworkError


def ics_stamp(value: datetime) -> str:
    return value.strftime('%Y%m%dT%H%M%SZ')


def vevent(uid, summary, start, end=None):
    lines = [
        'BEGIN:VEVENT',
        f'UID:{uid}',
        f'SUMMARY:{summary}',
        f'DTSTART:{ics_stamp(start)}'
    ]
    if end is not None:
        lines.append(f'DTEND:{ics_stamp(end)}')
    lines.append('END:VEVENT')
    return '\r\n'.join(lines)


def calendar(*events):
    return '\r\n'.join(['BEGIN:VCALENDAR', 'VERSION:2.0', *events, 'END:VCALENDAR'])


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def source():
    return CalendarSource(
        calendar_id='cal-1',
        name='Team',
        feed_address='webcal://calendar.example.com/team.ics'
    )


@pytest.fixture
def store():
    return Mock()


@pytest.fixture
def fetcher():
    return Mock()


@pytest.fixture
def service(store, fetcher):
    return CalendarSyncService(store, fetcher=fetcher)


def written_fields(store):
    """Field dicts passed to update_document, in call order."""
    return [update.args[2] for update in store.update_document.call_args_list]


class TestSyncCalendar:
    """Test cases for the sync state machine."""

    def test_successful_sync(self, service, store, fetcher, source, now):
        """Test syncing then success, with the events map fully written."""
        fetcher.fetch.return_value = calendar(
            vevent('abc', 'Standup', now, now + timedelta(minutes=30))
        )

        outcome = service.sync_calendar(source)

        assert outcome.to_dict() == {'success': True, 'eventCount': 1}
        fetcher.fetch.assert_called_once_with(source.feed_address)

        syncing, success = written_fields(store)
        assert syncing['sync.syncStatus'] == 'syncing'
        assert 'events' not in syncing
        assert 'updatedAt' in syncing

        assert success['sync.syncStatus'] == 'success'
        assert success['sync.errorMessage'] is DELETE_FIELD
        assert success['sync.errorType'] is DELETE_FIELD
        assert success['sync.retryable'] is DELETE_FIELD
        assert success['sync.lastSyncedAt'].endswith('Z')
        assert 'updatedAt' in success

        event = success['events']['event-abc']
        assert event['title'] == 'Standup'
        assert event['startTime'] == now.strftime('%Y-%m-%dT%H:%M:%SZ')
        assert event['calendarId'] == 'cal-1'
        assert event['source'] == 'ical_feed'

        for update in store.update_document.call_args_list:
            assert update.args[:2] == ('calendars', 'cal-1')

    def test_events_filtered_and_deduplicated(self, service, store, fetcher, source, now):
        """Test window filtering, dropped malformed events and last-UID-wins."""
        fetcher.fetch.return_value = calendar(
            vevent('dup', 'First', now, now + timedelta(hours=1)),
            vevent('old', 'Too old', now - timedelta(days=400), now - timedelta(days=399)),
            vevent('far', 'Too far', now + timedelta(days=800), now + timedelta(days=801)),
            vevent('no-end', 'Missing end', now),
            vevent('dup', 'Second', now + timedelta(days=1), now + timedelta(days=1, hours=1))
        )

        outcome = service.sync_calendar(source)

        assert outcome.event_count == 1
        events = written_fields(store)[-1]['events']
        assert list(events) == ['event-dup']
        assert events['event-dup']['title'] == 'Second'

    @patch('sync.calendar_sync.time.sleep')
    def test_timeout_retried_twice_then_error(self, mock_sleep, service, store, fetcher, source):
        """Test a timing-out fetch makes 3 attempts before finalizing as error."""
        fetcher.fetch.side_effect = NetworkError('Timeout after 30s fetching feed')

        outcome = service.sync_calendar(source)

        assert fetcher.fetch.call_count == 3
        assert mock_sleep.call_args_list == [call(1), call(2)]
        assert outcome.to_dict() == {
            'success': False,
            'error': 'Timeout after 30s fetching feed',
            'retryable': True
        }

        fields = written_fields(store)
        assert [f['sync.syncStatus'] for f in fields] == [
            'syncing', 'syncing', 'syncing', 'error'
        ]
        error = fields[-1]
        assert error['sync.errorType'] == 'network'
        assert error['sync.retryable'] is True
        assert error['sync.errorMessage'] == 'Timeout after 30s fetching feed'
        assert 'events' not in error

    @patch('sync.calendar_sync.time.sleep')
    def test_garbled_body_not_retried(self, mock_sleep, service, store, fetcher, source):
        """Test an unparseable body finalizes immediately as a parse error."""
        fetcher.fetch.return_value = '<html><body>Access denied</body></html>'

        outcome = service.sync_calendar(source)

        assert fetcher.fetch.call_count == 1
        mock_sleep.assert_not_called()
        assert outcome.success is False
        assert outcome.retryable is False

        error = written_fields(store)[-1]
        assert error['sync.syncStatus'] == 'error'
        assert error['sync.errorType'] == 'parse'
        assert error['sync.retryable'] is False
        assert 'events' not in error

    @patch('sync.calendar_sync.time.sleep')
    def test_recovers_after_transient_failure(self, mock_sleep, service, store, fetcher, source, now):
        fetcher.fetch.side_effect = [
            NetworkError('HTTP 503: Service Unavailable'),
            calendar(vevent('abc', 'Standup', now, now + timedelta(minutes=30)))
        ]

        outcome = service.sync_calendar(source)

        assert outcome.success is True
        assert fetcher.fetch.call_count == 2
        mock_sleep.assert_called_once_with(1)
        assert written_fields(store)[-1]['sync.syncStatus'] == 'success'

    @patch('sync.calendar_sync.time.sleep')
    def test_non_retryable_network_error(self, mock_sleep, service, store, fetcher, source):
        fetcher.fetch.side_effect = NetworkError('Invalid feed address', retryable=False)

        outcome = service.sync_calendar(source)

        assert fetcher.fetch.call_count == 1
        mock_sleep.assert_not_called()
        assert outcome.retryable is False
        error = written_fields(store)[-1]
        assert error['sync.errorType'] == 'network'
        assert error['sync.retryable'] is False

    @patch('sync.calendar_sync.time.sleep')
    def test_custom_retry_policy(self, mock_sleep, store, fetcher, source):
        service = CalendarSyncService(store, fetcher=fetcher, max_retries=0)
        fetcher.fetch.side_effect = NetworkError('Connection refused')

        service.sync_calendar(source)

        assert fetcher.fetch.call_count == 1
        mock_sleep.assert_not_called()

    @patch('sync.calendar_sync.time.sleep')
    def test_truncated_feed_keeps_stored_events(self, mock_sleep, service, store, fetcher, source):
        """Test a feed cut off mid-event finalizes as a parse error without writing events."""
        fetcher.fetch.return_value = 'BEGIN:VCALENDAR\nVERSION:2.0\nBEGIN:VEVENT\nUID:a\nSUMMARY:x'

        outcome = service.sync_calendar(source)

        assert outcome.success is False
        assert fetcher.fetch.call_count == 1
        fields = written_fields(store)
        assert all('events' not in f for f in fields)
        assert fields[-1]['sync.syncStatus'] == 'error'
        assert fields[-1]['sync.errorType'] == 'parse'

    def test_final_write_failure_records_error(self, service, store, fetcher, source, now):
        """Test a rejected events write leaves the calendar in error, not syncing."""
        fetcher.fetch.return_value = calendar(
            vevent('abc', 'Standup', now, now + timedelta(minutes=30))
        )

        def update(collection, doc_id, fields):
            if 'events' in fields:
                raise DocumentStoreError('Item size has exceeded the maximum allowed size')

        store.update_document.side_effect = update

        outcome = service.sync_calendar(source)

        assert outcome.success is False
        assert outcome.retryable is False
        assert 'Item size' in outcome.error
        fields = written_fields(store)
        assert [f['sync.syncStatus'] for f in fields] == ['syncing', 'success', 'error']
        error = fields[-1]
        assert 'events' not in error
        assert error['sync.errorType'] == 'network'
        assert error['sync.retryable'] is False
        assert 'Item size' in error['sync.errorMessage']

    def test_syncing_write_failure_records_error(self, service, store, fetcher, source):
        """Test a failed syncing write ends the attempt with an error status."""
        def update(collection, doc_id, fields):
            if fields['sync.syncStatus'] == 'syncing':
                raise DocumentStoreError('Throttled')

        store.update_document.side_effect = update

        outcome = service.sync_calendar(source)

        assert outcome.success is False
        fetcher.fetch.assert_not_called()
        assert written_fields(store)[-1]['sync.syncStatus'] == 'error'

    def test_unreachable_store_does_not_raise(self, service, store, fetcher, source):
        store.update_document.side_effect = DocumentStoreError('Unavailable')

        outcome = service.sync_calendar(source)

        assert outcome.to_dict() == {
            'success': False,
            'error': 'Failed to store sync result: Unavailable',
            'retryable': False
        }
        assert store.update_document.call_count == 2

    def test_calendar_locks_released(self, service, store, fetcher, source, now):
        """Test no per-calendar lock entry outlives its sync."""
        fetcher.fetch.return_value = calendar(
            vevent('abc', 'Standup', now, now + timedelta(minutes=30))
        )

        service.sync_calendar(source)

        assert service._locks == {}


class TestSyncCalendarById:
    """Test cases for the caller-facing entry point."""

    def test_syncs_stored_calendar(self, service, store, fetcher, now):
        store.get_document.return_value = {
            'id': 'cal-1',
            'name': 'Team',
            'source': {'calendarAddress': 'https://calendar.example.com/team.ics'}
        }
        fetcher.fetch.return_value = calendar(
            vevent('abc', 'Standup', now, now + timedelta(minutes=30))
        )

        result = service.sync_calendar_by_id('cal-1')

        assert result == {'success': True, 'eventCount': 1}
        store.get_document.assert_called_once_with('calendars', 'cal-1')
        fetcher.fetch.assert_called_once_with('https://calendar.example.com/team.ics')

    def test_unknown_calendar(self, service, store, fetcher):
        store.get_document.return_value = None

        result = service.sync_calendar_by_id('missing')

        assert result['success'] is False
        assert result['retryable'] is False
        assert 'missing' in result['error']
        fetcher.fetch.assert_not_called()
        store.update_document.assert_not_called()

    def test_calendar_without_feed_address(self, service, store, fetcher):
        store.get_document.return_value = {'id': 'cal-1', 'name': 'Local only'}

        result = service.sync_calendar_by_id('cal-1')

        assert result['success'] is False
        fetcher.fetch.assert_not_called()

    def test_storage_failure_returned_not_raised(self, service, store):
        store.get_document.side_effect = DocumentStoreError('Throttled')

        result = service.sync_calendar_by_id('cal-1')

        assert result == {'success': False, 'error': 'Throttled', 'retryable': False}


class TestSyncAllCalendars:
    """Test cases for concurrent fan-out."""

    @patch('sync.calendar_sync.time.sleep')
    def test_failures_are_isolated(self, mock_sleep, service, store, fetcher, now):
        documents = {
            'good': {'name': 'Good', 'source': {'calendarAddress': 'https://good.example.com/a.ics'}},
            'bad': {'name': 'Bad', 'source': {'calendarAddress': 'https://bad.example.com/b.ics'}}
        }
        store.get_document.side_effect = lambda collection, doc_id: documents.get(doc_id)

        def fetch(address):
            if 'bad' in address:
                raise NetworkError('Connection refused')
            return calendar(vevent('abc', 'Standup', now, now + timedelta(minutes=30)))

        fetcher.fetch.side_effect = fetch

        results = service.sync_all_calendars(['good', 'bad', 'unknown'])

        assert results['good'] == {'success': True, 'eventCount': 1}
        assert results['bad']['success'] is False
        assert results['bad']['retryable'] is True
        assert results['unknown']['success'] is False

    def test_unexpected_exception_contained(self, service):
        service.sync_calendar_by_id = Mock(side_effect=[RuntimeError('boom')])

        results = service.sync_all_calendars(['cal-1'])

        assert results == {'cal-1': {'success': False, 'error': 'boom', 'retryable': False}}

    def test_empty_input(self, service):
        assert service.sync_all_calendars([]) == {}


class TestRegisterCalendar:
    """Test cases for calendar registration."""

    def test_register_writes_pending_calendar(self, service, store):
        registered = service.register_calendar(
            'Family', 'webcal://calendar.example.com/family.ics', calendar_id='cal-9'
        )

        assert registered == CalendarSource(
            calendar_id='cal-9',
            name='Family',
            feed_address='webcal://calendar.example.com/family.ics'
        )
        collection, doc_id, fields = store.update_document.call_args.args
        assert (collection, doc_id) == ('calendars', 'cal-9')
        assert fields['sync'] == {'syncStatus': 'pending'}
        assert fields['source'] == {'calendarAddress': 'webcal://calendar.example.com/family.ics'}
        assert fields['createdAt'] == fields['updatedAt']

    def test_register_generates_id(self, service):
        registered = service.register_calendar('Family', 'https://example.com/f.ics')

        assert registered.calendar_id

    @pytest.mark.parametrize('name, address', [
        ('', 'https://example.com/f.ics'),
        ('Family', ''),
        ('Family', 'ftp://example.com/f.ics'),
        ('Family', 'not a url')
    ])
    def test_register_rejects_invalid_input(self, service, store, name, address):
        with pytest.raises(InvalidCalendarError):
            service.register_calendar(name, address)

        store.update_document.assert_not_called()
