"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

from pco.calendar_api import ConfigurationError, PcoCalendarClient

DEFAULT_EXCLUDED_EVENT_TYPES = 'Worship Service,Rehearsal,Practice'


@dataclass
class SyncConfig:
    """Settings for a sync run."""
    app_id: Optional[str] = None
    secret: Optional[str] = None
    base_url: str = PcoCalendarClient.BASE_URL
    events_table: str = 'events'
    meta_table: str = 'event_meta'
    submissions_table: str = 'event_form_submissions'
    notes_table: str = 'event_timeline_notes'
    lock_table: str = 'sync_locks'
    log_level: str = 'INFO'
    days_ahead: int = 90
    timeout_seconds: int = 30
    request_delay_ms: int = 210
    deadline_seconds: Optional[float] = None
    excluded_event_types: FrozenSet[str] = field(
        default_factory=lambda: parse_event_types(DEFAULT_EXCLUDED_EVENT_TYPES)
    )
    min_sync_interval_seconds: int = 60
    lock_lease_seconds: int = 900

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SyncConfig':
        """
        Build the configuration from environment variables.

        Credentials are not validated here; the API client rejects missing
        credentials before any network call.

        Raises:
            ConfigurationError: If a numeric setting is not a number
        """
        env = os.environ if environ is None else environ
        deadline = env.get('SYNC_DEADLINE_SECONDS')

        return cls(
            app_id=env.get('PCO_APP_ID'),
            secret=env.get('PCO_SECRET'),
            base_url=env.get('PCO_BASE_URL', PcoCalendarClient.BASE_URL),
            events_table=env.get('EVENTS_TABLE_NAME', 'events'),
            meta_table=env.get('EVENT_META_TABLE_NAME', 'event_meta'),
            submissions_table=env.get('FORM_SUBMISSIONS_TABLE_NAME', 'event_form_submissions'),
            notes_table=env.get('TIMELINE_NOTES_TABLE_NAME', 'event_timeline_notes'),
            lock_table=env.get('SYNC_LOCK_TABLE_NAME', 'sync_locks'),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            days_ahead=_number(env, 'DAYS_AHEAD', '90', int),
            timeout_seconds=_number(env, 'TIMEOUT_SECONDS', '30', int),
            request_delay_ms=_number(env, 'REQUEST_DELAY_MS', '210', int),
            deadline_seconds=_number(env, 'SYNC_DEADLINE_SECONDS', deadline, float) if deadline else None,
            excluded_event_types=parse_event_types(
                env.get('EXCLUDED_EVENT_TYPES', DEFAULT_EXCLUDED_EVENT_TYPES)
            ),
            min_sync_interval_seconds=_number(env, 'MIN_SYNC_INTERVAL_SECONDS', '60', int),
            lock_lease_seconds=_number(env, 'SYNC_LOCK_LEASE_SECONDS', '900', int)
        )


def parse_event_types(value: str) -> FrozenSet[str]:
    """Parse a comma separated list of event types into a casefolded set."""
    return frozenset(
        part.strip().casefold() for part in (value or '').split(',') if part.strip()
    )


def _number(env: Mapping[str, str], name: str, default: str, kind):
    raw = env.get(name, default)
    try:
        return kind(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
