"""Planning Center Online Calendar API client."""
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

import requests

from processor.models import Page, RemoteResource

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class RemoteApiError(Exception):
    """Raised when the PCO API answers with a non-2xx status."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"PCO API error ({status}): {body}")


class PcoCalendarClient:
    """Client for the PCO Calendar v2 API using HTTP Basic auth."""

    BASE_URL = "https://api.planningcenteronline.com/calendar/v2"
    PER_PAGE = 100
    MAX_RETRIES = 3
    RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        app_id: Optional[str] = None,
        secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: int = 30,
        retry_base_delay: float = 1.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API client.

        Args:
            app_id: Personal access token app id (default: PCO_APP_ID)
            secret: Personal access token secret (default: PCO_SECRET)
            base_url: API root URL (default: BASE_URL)
            timeout: HTTP request timeout in seconds (default: 30)
            retry_base_delay: Base delay for exponential backoff in seconds
            session: Optional requests session to reuse

        Raises:
            ConfigurationError: If either credential is missing
        """
        app_id = app_id if app_id is not None else os.environ.get('PCO_APP_ID')
        secret = secret if secret is not None else os.environ.get('PCO_SECRET')
        if not app_id or not secret:
            raise ConfigurationError(
                "PCO_APP_ID and PCO_SECRET must be set in environment variables"
            )

        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.base_path = urlsplit(self.base_url).path.rstrip('/')
        self.timeout = timeout
        self.retry_base_delay = retry_base_delay
        self.session = session or requests.Session()
        self.session.auth = (app_id, secret)
        self.session.headers.update({'Content-Type': 'application/json'})

    def fetch_page(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Page:
        """
        Fetch a single page of resources.

        Args:
            endpoint: Path relative to the API root, optionally with a query
            params: Extra query parameters merged into the endpoint query

        Returns:
            Page with primary items, included resources and the next endpoint
        """
        payload = self._request(endpoint, params)

        data = payload.get('data')
        if isinstance(data, dict):
            data = [data]
        items = self._parse_resources(data)
        included = self._parse_resources(payload.get('included'))

        return Page(
            items=items,
            included=included,
            next_endpoint=self._next_endpoint(endpoint, params, payload)
        )

    def fetch_all(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        before_page: Optional[Callable[[], None]] = None
    ) -> Tuple[List[RemoteResource], List[RemoteResource]]:
        """
        Follow pagination until the API stops returning a next page.

        Args:
            endpoint: Path of the first page
            params: Query parameters of the first page
            before_page: Called before every page after the first; may raise
                to stop paging

        Returns:
            Tuple of (items, included) aggregated over all pages
        """
        items: List[RemoteResource] = []
        included: List[RemoteResource] = []
        next_endpoint: Optional[str] = endpoint
        next_params = params
        pages = 0

        while next_endpoint is not None:
            if pages and before_page is not None:
                before_page()
            page = self.fetch_page(next_endpoint, next_params)
            pages += 1
            items.extend(page.items)
            included.extend(page.included)
            next_endpoint = page.next_endpoint
            # The next endpoint already carries the full query
            next_params = None

        logger.debug(f"Fetched {len(items)} items over {pages} pages from {endpoint}")
        return items, included

    def fetch_approved_instances(
        self,
        days_ahead: int = 90,
        before_page: Optional[Callable[[], None]] = None
    ) -> Tuple[List[RemoteResource], List[RemoteResource]]:
        """
        Fetch approved, future event instances within the look-ahead window.

        Args:
            days_ahead: Number of days to fetch instances for (default: 90)
            before_page: Hook run before each page after the first

        Returns:
            Tuple of (instances, included) with parent events and event times
        """
        logger.info(f"Fetching approved event instances for {days_ahead} days ahead")

        start = datetime.now(timezone.utc)
        end = start + timedelta(days=days_ahead)
        params = {
            'filter': 'future,approved',
            'where[starts_at][gte]': _iso(start),
            'where[starts_at][lte]': _iso(end),
            'include': 'event,event_times',
            'per_page': str(self.PER_PAGE)
        }

        instances, included = self.fetch_all('/event_instances', params, before_page)
        logger.info(f"Successfully fetched {len(instances)} event instances")
        return instances, included

    def fetch_event(
        self,
        event_id: str
    ) -> Tuple[Optional[RemoteResource], List[RemoteResource]]:
        page = self.fetch_page(
            f'/events/{event_id}',
            {'include': 'event_instances,event_times,owner'}
        )
        event = page.items[0] if page.items else None
        return event, page.included

    def fetch_instance_rooms(self, instance_id: str) -> List[RemoteResource]:
        """Fetch the rooms booked for an event instance."""
        page = self.fetch_page(
            f'/event_instances/{instance_id}/event_times',
            {'include': 'room_setups'}
        )
        return [r for r in page.included if r.kind == 'Room']

    def fetch_event_tags(
        self,
        event_id: str,
        before_page: Optional[Callable[[], None]] = None
    ) -> List[RemoteResource]:
        """Fetch the tags attached to an event."""
        tags, _ = self.fetch_all(f'/events/{event_id}/tags', before_page=before_page)
        return [t for t in tags if t.kind == 'Tag']

    def fetch_event_requests(
        self,
        event_id: str,
        before_page: Optional[Callable[[], None]] = None
    ) -> Tuple[List[RemoteResource], List[RemoteResource]]:
        """
        Fetch event requests with their form submissions and submitters.

        Returns:
            Tuple of (requests, included)
        """
        return self.fetch_all(
            f'/events/{event_id}/event_requests',
            {'include': 'form_submission,submitter'},
            before_page
        )

    def fetch_person(self, person_id: str) -> Optional[RemoteResource]:
        page = self.fetch_page(f'/people/{person_id}')
        return page.items[0] if page.items else None

    def test_connection(self) -> bool:
        """
        Check that the credentials work against the API root.

        Returns:
            True if the API root answers with the organization resource
        """
        try:
            page = self.fetch_page('')
        except (RemoteApiError, requests.RequestException) as e:
            logger.warning(f"PCO connection test failed: {e}")
            return False
        return bool(page.items) and page.items[0].kind == 'Organization'

    def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform a GET request with retry logic.

        Raises:
            RemoteApiError: If the API answers with a non-2xx status
            requests.RequestException: If all retry attempts fail in transport
        """
        url = f"{self.base_url}{endpoint}"

        for attempt in range(self.MAX_RETRIES):
            last_attempt = attempt == self.MAX_RETRIES - 1
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if last_attempt:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise
                self._backoff(attempt, e)
                continue

            if response.ok:
                return response.json()

            if response.status_code in self.RETRY_STATUSES and not last_attempt:
                self._backoff(attempt, f"HTTP {response.status_code}")
                continue

            raise RemoteApiError(response.status_code, response.text)

    def _backoff(self, attempt: int, reason: Any) -> None:
        delay = self.retry_base_delay * (2 ** attempt)
        logger.warning(
            f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {reason}. "
            f"Retrying in {delay} seconds..."
        )
        time.sleep(delay)

    def _next_endpoint(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        payload: Dict[str, Any]
    ) -> Optional[str]:
        """
        Work out the endpoint of the next page.

        Prefers the absolute links.next URL, rewritten relative to the API
        root; falls back to the offset cursor in meta.next.
        """
        links = payload.get('links') or {}
        next_link = links.get('next') if isinstance(links, dict) else None
        if next_link:
            parts = urlsplit(next_link)
            path = parts.path
            if self.base_path and path.startswith(self.base_path):
                path = path[len(self.base_path):]
            return f"{path}?{parts.query}" if parts.query else path

        meta = payload.get('meta') or {}
        next_meta = meta.get('next') if isinstance(meta, dict) else None
        if isinstance(next_meta, dict) and next_meta.get('offset') is not None:
            parts = urlsplit(endpoint)
            query = dict(parse_qsl(parts.query, keep_blank_values=True))
            query.update(params or {})
            query['offset'] = str(next_meta['offset'])
            return f"{parts.path}?{urlencode(query)}"

        return None

    @staticmethod
    def _parse_resources(data: Any) -> List[RemoteResource]:
        if not isinstance(data, list):
            return []
        resources = []
        for item in data:
            resource = RemoteResource.from_json(item)
            if resource:
                resources.append(resource)
        return resources


def _iso(value: datetime) -> str:
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')
