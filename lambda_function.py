"""AWS Lambda handler for calendar feed synchronization."""
import json
import logging
import os
import time
from typing import Dict, Any

from fetcher.feed_fetcher import FeedFetcher
from storage.document_store import DynamoDBDocumentStore
from sync.calendar_sync import CALENDARS_COLLECTION, CalendarSyncService

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for calendar sync.

    Args:
        event: Payload with either 'calendarId' or 'calendarIds'
        context: Lambda context object

    Returns:
        Response dict with statusCode and per-calendar results
    """
    # Read configuration from environment variables
    table_name = os.environ.get('CALENDARS_TABLE', 'calendars')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    max_retries = int(os.environ.get('MAX_RETRIES', '2'))

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    event = event or {}

    if event.get('calendarId'):
        calendar_ids = [event['calendarId']]
    else:
        calendar_ids = list(event.get('calendarIds') or [])

    if not calendar_ids:
        logger.error("No calendarId or calendarIds in event payload")
        return _response(400, {
            'message': 'Event must contain calendarId or calendarIds'
        })

    logger.info(
        "Lambda execution started",
        extra={
            'table_name': table_name,
            'calendar_count': len(calendar_ids),
            'timeout_seconds': timeout_seconds,
            'max_retries': max_retries
        }
    )

    try:
        store = DynamoDBDocumentStore(
            table_names={CALENDARS_COLLECTION: table_name}
        )
        service = CalendarSyncService(
            store,
            fetcher=FeedFetcher(timeout=timeout_seconds),
            max_retries=max_retries
        )

        if len(calendar_ids) == 1:
            results = {calendar_ids[0]: service.sync_calendar_by_id(calendar_ids[0])}
        else:
            results = service.sync_all_calendars(calendar_ids)

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    failed = [
        calendar_id for calendar_id, result in results.items()
        if not result['success']
    ]

    logger.info(
        "Lambda execution completed",
        extra={
            'duration_seconds': round(duration, 2),
            'calendars_synced': len(results) - len(failed),
            'calendars_failed': len(failed)
        }
    )

    return _response(500 if failed else 200, {
        'message': 'Sync failed for some calendars' if failed else 'Sync completed successfully',
        'results': results,
        'failed': failed,
        'duration_seconds': round(duration, 2)
    })
