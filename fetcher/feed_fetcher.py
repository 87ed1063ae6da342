"""HTTP fetcher for remote iCalendar feeds."""
import logging

import requests

from sync.errors import NetworkError

logger = logging.getLogger(__name__)

WEBCAL_PREFIX = 'webcal://'
HTTPS_PREFIX = 'https://'


def normalize_feed_address(feed_address: str) -> str:
    """Rewrite a webcal:// subscription link to https://."""
    feed_address = feed_address.strip()
    if feed_address.lower().startswith(WEBCAL_PREFIX):
        return HTTPS_PREFIX + feed_address[len(WEBCAL_PREFIX):]
    return feed_address


class FeedFetcher:
    """Retrieves raw ICS text with a single bounded GET request."""

    USER_AGENT = 'Calendar App/1.0'

    def __init__(self, timeout: int = 30):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def fetch(self, feed_address: str) -> str:
        """
        Fetch the feed body.

        Args:
            feed_address: Feed URL, webcal:// or http(s)://

        Returns:
            Feed text

        Raises:
            NetworkError: On timeout, connection or DNS failure, or a
                non-success HTTP status
        """
        url = normalize_feed_address(feed_address)
        logger.info(f"Fetching calendar feed from {url}")

        try:
            response = requests.get(
                url,
                timeout=self.timeout,
                headers={
                    'User-Agent': self.USER_AGENT,
                    'Accept': 'text/calendar'
                }
            )
        except requests.Timeout as e:
            raise NetworkError(
                f"Timeout after {self.timeout}s fetching {url}: {e}"
            ) from e
        except requests.ConnectionError as e:
            raise NetworkError(f"Network error fetching {url}: {e}") from e
        except (requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            raise NetworkError(
                f"Invalid feed address {url}: {e}", retryable=False
            ) from e
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch {url}: {e}") from e

        if not response.ok:
            raise NetworkError(f"HTTP {response.status_code}: {response.reason}")

        # iCalendar defaults to UTF-8; requests would guess ISO-8859-1
        content_type = response.headers.get('Content-Type', '')
        if 'charset' not in content_type.lower():
            response.encoding = 'utf-8'

        logger.info(f"Fetched {len(response.text)} characters from {url}")
        return response.text
