"""Reconciliation of local events against the PCO Calendar."""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from pco.calendar_api import RemoteApiError
from processor.event_transformer import EventTransformer, ResourceIndex
from processor.models import (
    Enrichment,
    FormSubmission,
    LocalEvent,
    RemoteResource,
    SyncResult,
)

logger = logging.getLogger(__name__)

ENRICHMENT_ERRORS = (RemoteApiError, requests.RequestException)


class SyncPhase(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    ENRICHING = 'enriching'
    DIFFING = 'diffing'
    WRITING = 'writing'
    DONE = 'done'


class DeadlineExceeded(Exception):
    """Raised internally when a run must stop issuing remote calls."""


@dataclass
class IncomingEvent:
    event: LocalEvent
    # None means the submissions could not be fetched and must be left alone
    submissions: Optional[List[FormSubmission]] = None


@dataclass
class _RunState:
    """Per-run caches and bookkeeping."""
    deadline: Optional[float]
    synced_at: str
    event_types: Dict[str, Optional[str]] = field(default_factory=dict)
    people: Dict[str, Optional[RemoteResource]] = field(default_factory=dict)
    event_requests: Dict[str, Tuple[List[RemoteResource], ResourceIndex]] = field(
        default_factory=dict
    )
    remote_calls: int = 0


class SyncEngine:
    """
    Runs fetch, enrich, diff and write against the local store.

    The pipeline is strictly sequential. Every enrichment call and every
    follow-up page is separated by a fixed delay to stay below the upstream
    rate limit of 100 requests per 20 seconds.
    """

    DELETE_BATCH_SIZE = 50

    def __init__(
        self,
        client,
        storage,
        transformer: Optional[EventTransformer] = None,
        excluded_event_types: Iterable[str] = (),
        request_delay: float = 0.21,
        deadline_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the engine.

        Args:
            client: PcoCalendarClient or compatible object
            storage: DynamoDBManager or compatible object
            transformer: EventTransformer (default: new instance)
            excluded_event_types: Event types never synced, case-insensitive
            request_delay: Seconds to wait after each enrichment call
            deadline_seconds: Optional budget after which no remote calls
                are issued
            sleep: Sleep function
            clock: Monotonic clock in seconds
        """
        self.client = client
        self.storage = storage
        self.transformer = transformer or EventTransformer()
        self.excluded_event_types = frozenset(t.casefold() for t in excluded_event_types)
        self.request_delay = request_delay
        self.deadline_seconds = deadline_seconds
        self._sleep = sleep
        self._clock = clock
        self.phase = SyncPhase.IDLE

    def run_sync(self, days_ahead: int = 90) -> SyncResult:
        """
        Synchronize approved upstream event instances into the local store.

        Args:
            days_ahead: Number of days to look ahead (default: 90)

        Returns:
            SyncResult; a fatal failure yields a single error and no writes
        """
        started = self._clock()
        result = SyncResult()
        state = _RunState(
            deadline=started + self.deadline_seconds if self.deadline_seconds else None,
            synced_at=datetime.now(timezone.utc).isoformat()
        )
        logger.info(f"Starting sync for {days_ahead} days ahead")

        self._enter(SyncPhase.FETCHING)
        state.remote_calls += 1
        try:
            instances, included = self.client.fetch_approved_instances(
                days_ahead=days_ahead,
                before_page=lambda: self._next_page(state)
            )
        except DeadlineExceeded:
            # A partial instance list cannot be diffed against the store
            result.timed_out = True
            message = "Sync failed: deadline exceeded while fetching event instances"
            logger.error(message)
            result.errors.append(message)
            return self._finish(result, started)
        except Exception as e:
            logger.error(f"Failed to fetch event instances: {e}", exc_info=True)
            result.errors.append(f"Sync failed: {e}")
            return self._finish(result, started)

        self._enter(SyncPhase.ENRICHING)
        index = ResourceIndex(included)
        incoming = self._enrich_all(instances, index, state, result)
        result.total = len(incoming)

        self._enter(SyncPhase.DIFFING)
        try:
            existing_ids = self.storage.get_event_ids()
        except Exception as e:
            logger.error(f"Failed to load existing event ids: {e}", exc_info=True)
            result.errors.append(f"Sync failed: {e}")
            return self._finish(result, started)

        to_delete = sorted(existing_ids - set(incoming))
        logger.info(
            f"Sync plan: {len(set(incoming) - existing_ids)} to create, "
            f"{len(set(incoming) & existing_ids)} to update, "
            f"{len(to_delete)} to delete"
        )

        self._enter(SyncPhase.WRITING)
        for item in incoming.values():
            self._write(item, existing_ids, result)

        if result.timed_out:
            logger.warning(
                f"Skipping {len(to_delete)} deletions because the run hit its deadline"
            )
        else:
            self._delete(to_delete, result)

        return self._finish(result, started)

    # Enriching

    def _enrich_all(
        self,
        instances: List[RemoteResource],
        index: ResourceIndex,
        state: _RunState,
        result: SyncResult
    ) -> Dict[str, IncomingEvent]:
        incoming: Dict[str, IncomingEvent] = {}

        for position, instance in enumerate(instances):
            try:
                item = self._enrich(instance, index, state, result)
            except DeadlineExceeded:
                result.timed_out = True
                message = (
                    f"Deadline exceeded after enriching {position} of "
                    f"{len(instances)} instances"
                )
                logger.warning(message)
                result.errors.append(message)
                break
            if item is not None:
                incoming[item.event.event_id] = item

        logger.info(
            f"Enriched {len(incoming)} instances with {state.remote_calls} API calls, "
            f"{result.excluded} excluded"
        )
        return incoming

    def _enrich(
        self,
        instance: RemoteResource,
        index: ResourceIndex,
        state: _RunState,
        result: SyncResult
    ) -> Optional[IncomingEvent]:
        """
        Resolve tags, rooms, owner and submissions for one instance.

        Returns:
            IncomingEvent, or None when the event type is excluded
        """
        parent = self.transformer.resolve_parent_event(instance, index)
        parent_id = parent.id if parent is not None else instance.related_id('event')
        enrichment = Enrichment()

        if parent_id:
            try:
                enrichment.event_type = self._event_type(parent_id, state)
            except ENRICHMENT_ERRORS as e:
                self._enrichment_failed(result, instance.id, 'tags', e)

        if self._is_excluded(enrichment.event_type):
            logger.debug(
                f"Excluding instance {instance.id} with type {enrichment.event_type}"
            )
            result.excluded += 1
            return None

        try:
            rooms = self._call(state, self.client.fetch_instance_rooms, instance.id)
            enrichment.rooms = [
                room.attributes['name'] for room in rooms if room.attributes.get('name')
            ]
        except ENRICHMENT_ERRORS as e:
            self._enrichment_failed(result, instance.id, 'rooms', e)

        owner_id = parent.related_id('owner') if parent is not None else None
        if owner_id and index.get('Person', owner_id) is None:
            try:
                enrichment.owner = self._person(owner_id, state)
            except ENRICHMENT_ERRORS as e:
                self._enrichment_failed(result, instance.id, 'owner', e)

        submissions = None
        if parent_id:
            try:
                requests_, request_index = self._event_requests(parent_id, state)
                submissions = self.transformer.to_form_submissions(
                    instance.id, requests_, request_index
                )
            except ENRICHMENT_ERRORS as e:
                self._enrichment_failed(result, instance.id, 'form submissions', e)

        event = self.transformer.to_local_event(
            instance, index, enrichment, synced_at=state.synced_at
        )
        return IncomingEvent(event=event, submissions=submissions)

    def _event_type(self, parent_id: str, state: _RunState) -> Optional[str]:
        if parent_id not in state.event_types:
            tags = self._call(
                state, self.client.fetch_event_tags, parent_id, paginated=True
            )
            names = [tag.attributes.get('name') for tag in tags]
            state.event_types[parent_id] = next((str(n) for n in names if n), None)
        return state.event_types[parent_id]

    def _person(self, person_id: str, state: _RunState) -> Optional[RemoteResource]:
        if person_id not in state.people:
            state.people[person_id] = self._call(state, self.client.fetch_person, person_id)
        return state.people[person_id]

    def _event_requests(
        self,
        parent_id: str,
        state: _RunState
    ) -> Tuple[List[RemoteResource], ResourceIndex]:
        if parent_id not in state.event_requests:
            requests_, included = self._call(
                state, self.client.fetch_event_requests, parent_id, paginated=True
            )
            state.event_requests[parent_id] = (requests_, ResourceIndex(included))
        return state.event_requests[parent_id]

    def _call(self, state: _RunState, fetch: Callable, *args, paginated: bool = False):
        """Make one remote call, then wait out the rate limit delay."""
        self._check_deadline(state)
        state.remote_calls += 1
        kwargs = {'before_page': lambda: self._next_page(state)} if paginated else {}
        try:
            return fetch(*args, **kwargs)
        finally:
            self._pause()

    def _next_page(self, state: _RunState) -> None:
        """Pace and count a follow-up page of a paginated call."""
        self._pause()
        self._check_deadline(state)
        state.remote_calls += 1

    def _check_deadline(self, state: _RunState) -> None:
        if state.deadline is not None and self._clock() >= state.deadline:
            raise DeadlineExceeded()

    def _pause(self) -> None:
        if self.request_delay > 0:
            self._sleep(self.request_delay)

    def _is_excluded(self, event_type: Optional[str]) -> bool:
        return bool(event_type) and event_type.casefold() in self.excluded_event_types

    def _enrichment_failed(
        self,
        result: SyncResult,
        instance_id: str,
        what: str,
        error: Exception
    ) -> None:
        logger.warning(f"Failed to fetch {what} for instance {instance_id}: {error}")
        result.errors.append(f"Instance {instance_id}: {what} lookup failed: {error}")

    # Writing

    def _write(
        self,
        item: IncomingEvent,
        existing_ids,
        result: SyncResult
    ) -> None:
        event_id = item.event.event_id
        try:
            if event_id in existing_ids:
                self.storage.update_event(item.event)
                result.updated += 1
            else:
                self.storage.create_event(item.event)
                result.created += 1
        except Exception as e:
            logger.error(f"Failed to write event {event_id}: {e}")
            result.errors.append(f"Event {event_id}: {e}")
            return

        if item.submissions is None:
            return
        try:
            self.storage.replace_form_submissions(event_id, item.submissions)
        except Exception as e:
            logger.error(f"Failed to replace form submissions for event {event_id}: {e}")
            result.errors.append(f"Event {event_id}: form submissions not replaced: {e}")

    def _delete(self, event_ids: List[str], result: SyncResult) -> None:
        for i in range(0, len(event_ids), self.DELETE_BATCH_SIZE):
            batch = event_ids[i:i + self.DELETE_BATCH_SIZE]
            try:
                self.storage.delete_events(batch)
                result.deleted += len(batch)
            except Exception as e:
                logger.error(
                    f"Error deleting batch {i // self.DELETE_BATCH_SIZE + 1}: {e}"
                )
                result.errors.append(f"Delete batch [{', '.join(batch)}]: {e}")

    # Bookkeeping

    def _enter(self, phase: SyncPhase) -> None:
        self.phase = phase
        logger.info(f"Sync phase: {phase.value}")

    def _finish(self, result: SyncResult, started: float) -> SyncResult:
        self._enter(SyncPhase.DONE)
        result.duration_ms = int(round((self._clock() - started) * 1000))
        logger.info(
            f"Sync complete: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {len(result.errors)} errors"
        )
        return result
