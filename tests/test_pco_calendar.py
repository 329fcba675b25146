"""Unit tests for PcoCalendarClient."""
import base64
from urllib.parse import parse_qs, urlsplit

import pytest
import responses
from requests.exceptions import ConnectionError as RequestsConnectionError

from pco.calendar_api import ConfigurationError, PcoCalendarClient, RemoteApiError
from factories import resource_json

BASE = "https://api.planningcenteronline.com/calendar/v2"


def make_client(**kwargs):
    kwargs.setdefault('retry_base_delay', 0)
    return PcoCalendarClient(app_id='app', secret='secret', **kwargs)


def instance_json(instance_id):
    return resource_json(
        'EventInstance', instance_id, {'starts_at': '2026-11-01T15:00:00Z'},
        event=('Event', '100')
    )


class TestConfiguration:
    """Test cases for credential handling."""

    @responses.activate
    def test_missing_credentials_raise_before_any_request(self, monkeypatch):
        monkeypatch.delenv('PCO_APP_ID', raising=False)
        monkeypatch.delenv('PCO_SECRET', raising=False)

        with pytest.raises(ConfigurationError):
            PcoCalendarClient()

        assert len(responses.calls) == 0

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.setenv('PCO_APP_ID', 'app')
        monkeypatch.delenv('PCO_SECRET', raising=False)

        with pytest.raises(ConfigurationError):
            PcoCalendarClient()

    @responses.activate
    def test_credentials_from_environment_sent_as_basic_auth(self, monkeypatch):
        monkeypatch.setenv('PCO_APP_ID', 'env-app')
        monkeypatch.setenv('PCO_SECRET', 'env-secret')
        responses.add(responses.GET, f"{BASE}/people/1", json={'data': resource_json('Person', '1')})

        PcoCalendarClient().fetch_person('1')

        expected = base64.b64encode(b'env-app:env-secret').decode()
        assert responses.calls[0].request.headers['Authorization'] == f'Basic {expected}'


class TestPagination:
    """Test cases for page fetching and pagination."""

    @responses.activate
    def test_fetch_page_parses_items_and_included(self):
        responses.add(
            responses.GET,
            f"{BASE}/event_instances",
            json={
                'data': [instance_json('1'), {'type': 'EventInstance'}],
                'included': [resource_json('Event', '100', {'name': 'Youth Night'})],
            },
            status=200
        )

        page = make_client().fetch_page('/event_instances')

        assert [i.id for i in page.items] == ['1']
        assert page.items[0].related_id('event') == '100'
        assert page.included[0].kind == 'Event'
        assert page.next_endpoint is None

    @responses.activate
    def test_fetch_all_follows_next_links_until_absent(self):
        for number, next_link in (
            (1, f"{BASE}/event_instances?offset=100&per_page=100"),
            (2, f"{BASE}/event_instances?offset=200&per_page=100"),
            (3, None),
        ):
            body = {
                'data': [instance_json(str(number))],
                'included': [resource_json('Event', f'e{number}')],
                'links': {'self': 'ignored'},
            }
            if next_link:
                body['links']['next'] = next_link
            responses.add(responses.GET, f"{BASE}/event_instances", json=body)

        items, included = make_client().fetch_all('/event_instances', {'per_page': '100'})

        assert len(responses.calls) == 3
        assert [i.id for i in items] == ['1', '2', '3']
        assert [r.id for r in included] == ['e1', 'e2', 'e3']
        second = urlsplit(responses.calls[1].request.url)
        assert second.path == '/calendar/v2/event_instances'
        assert parse_qs(second.query) == {'offset': ['100'], 'per_page': ['100']}

    @responses.activate
    def test_fetch_all_falls_back_to_meta_offset(self):
        responses.add(
            responses.GET,
            f"{BASE}/event_instances",
            json={'data': [instance_json('1')], 'meta': {'next': {'offset': 25}}}
        )
        responses.add(
            responses.GET,
            f"{BASE}/event_instances",
            json={'data': [instance_json('2')], 'meta': {'count': 1}}
        )

        items, _ = make_client().fetch_all(
            '/event_instances', {'filter': 'future,approved'}
        )

        assert [i.id for i in items] == ['1', '2']
        assert len(responses.calls) == 2
        query = parse_qs(urlsplit(responses.calls[1].request.url).query)
        assert query['offset'] == ['25']
        assert query['filter'] == ['future,approved']

    @responses.activate
    def test_before_page_hook_runs_between_pages_and_can_stop_paging(self):
        for number in (1, 2, 3):
            responses.add(
                responses.GET,
                f"{BASE}/events/100/tags",
                json={
                    'data': [resource_json('Tag', str(number), {'name': f'T{number}'})],
                    'links': {'next': f"{BASE}/events/100/tags?offset={number}"}
                }
            )
        hook_calls = []

        def before_page():
            hook_calls.append(len(responses.calls))
            if len(hook_calls) == 2:
                raise RuntimeError('out of time')

        with pytest.raises(RuntimeError):
            make_client().fetch_event_tags('100', before_page=before_page)

        assert hook_calls == [1, 2]
        assert len(responses.calls) == 2

    def test_next_link_is_rewritten_relative_to_base_path(self):
        client = make_client()
        endpoint = client._next_endpoint(
            '/event_instances',
            None,
            {'links': {'next': f"{BASE}/event_instances?offset=5"}}
        )
        assert endpoint == '/event_instances?offset=5'

    @responses.activate
    def test_fetch_approved_instances_filters_window(self):
        responses.add(responses.GET, f"{BASE}/event_instances", json={'data': []})

        instances, included = make_client().fetch_approved_instances(days_ahead=30)

        assert instances == []
        assert included == []
        query = parse_qs(urlsplit(responses.calls[0].request.url).query)
        assert query['filter'] == ['future,approved']
        assert query['include'] == ['event,event_times']
        assert query['per_page'] == ['100']
        assert query['where[starts_at][gte]'][0] < query['where[starts_at][lte]'][0]


class TestErrors:
    """Test cases for error handling and retries."""

    @responses.activate
    def test_non_2xx_raises_remote_api_error(self):
        responses.add(responses.GET, f"{BASE}/events/9", body='Not Found', status=404)

        with pytest.raises(RemoteApiError) as exc_info:
            make_client().fetch_event('9')

        assert exc_info.value.status == 404
        assert exc_info.value.body == 'Not Found'
        assert len(responses.calls) == 1

    @responses.activate
    def test_server_errors_are_retried_then_raised(self):
        for _ in range(3):
            responses.add(responses.GET, f"{BASE}/events/1/tags", body='Server Error', status=500)

        with pytest.raises(RemoteApiError) as exc_info:
            make_client().fetch_event_tags('1')

        assert exc_info.value.status == 500
        assert len(responses.calls) == 3

    @responses.activate
    def test_retry_succeeds_after_rate_limit(self):
        responses.add(responses.GET, f"{BASE}/events/1/tags", body='Slow down', status=429)
        responses.add(
            responses.GET,
            f"{BASE}/events/1/tags",
            json={'data': [resource_json('Tag', '7', {'name': 'Youth'})]}
        )

        tags = make_client().fetch_event_tags('1')

        assert [t.attributes['name'] for t in tags] == ['Youth']
        assert len(responses.calls) == 2

    @responses.activate
    def test_connection_errors_propagate_after_retries(self):
        for _ in range(3):
            responses.add(
                responses.GET, f"{BASE}/people/1", body=RequestsConnectionError('refused')
            )

        with pytest.raises(RequestsConnectionError):
            make_client().fetch_person('1')

        assert len(responses.calls) == 3


class TestEndpoints:
    """Test cases for enrichment endpoints."""

    @responses.activate
    def test_fetch_instance_rooms_returns_only_rooms(self):
        responses.add(
            responses.GET,
            f"{BASE}/event_instances/1/event_times",
            json={
                'data': [resource_json('EventTime', '11')],
                'included': [
                    resource_json('Room', '21', {'name': 'Gym'}),
                    resource_json('RoomSetup', '31'),
                    resource_json('Room', '22', {'name': 'Chapel'}),
                ],
            }
        )

        rooms = make_client().fetch_instance_rooms('1')

        assert [r.attributes['name'] for r in rooms] == ['Gym', 'Chapel']
        query = parse_qs(urlsplit(responses.calls[0].request.url).query)
        assert query['include'] == ['room_setups']

    @responses.activate
    def test_fetch_event_returns_event_and_included(self):
        responses.add(
            responses.GET,
            f"{BASE}/events/100",
            json={
                'data': resource_json('Event', '100', {'name': 'Youth Night'}),
                'included': [resource_json('Person', '500')],
            }
        )

        event, included = make_client().fetch_event('100')

        assert event.attributes['name'] == 'Youth Night'
        assert included[0].kind == 'Person'

    @responses.activate
    def test_fetch_event_requests_includes_submissions(self):
        responses.add(
            responses.GET,
            f"{BASE}/events/100/event_requests",
            json={
                'data': [resource_json('EventRequest', '1', form_submission=('FormSubmission', '2'))],
                'included': [resource_json('FormSubmission', '2')],
            }
        )

        requests_, included = make_client().fetch_event_requests('100')

        assert requests_[0].related_id('form_submission') == '2'
        assert included[0].kind == 'FormSubmission'

    @responses.activate
    def test_connection_check(self):
        responses.add(responses.GET, BASE, json={'data': resource_json('Organization', '1')})
        assert make_client().test_connection() is True

    @responses.activate
    def test_connection_check_reports_failure(self):
        responses.add(responses.GET, BASE, body='Unauthorized', status=401)
        assert make_client().test_connection() is False
