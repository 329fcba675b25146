"""Transform PCO resources into local event rows."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from processor.models import (
    Enrichment,
    FormSubmission,
    LocalEvent,
    RemoteResource,
)

logger = logging.getLogger(__name__)

UNTITLED_EVENT = 'Untitled Event'
CAMPUS_SEPARATOR = ' - '


class ResourceIndex:
    """Lookup of included resources by (kind, id)."""

    def __init__(self, resources: Iterable[RemoteResource] = ()):
        self._by_key: Dict[Tuple[str, str], RemoteResource] = {}
        self._first_by_kind: Dict[str, RemoteResource] = {}
        self.add(resources)

    def add(self, resources: Iterable[RemoteResource]) -> None:
        for resource in resources:
            self._by_key[(resource.kind, resource.id)] = resource
            self._first_by_kind.setdefault(resource.kind, resource)

    def get(self, kind: str, resource_id: Optional[str]) -> Optional[RemoteResource]:
        if resource_id is None:
            return None
        return self._by_key.get((kind, resource_id))

    def first(self, kind: str) -> Optional[RemoteResource]:
        return self._first_by_kind.get(kind)

    def __len__(self) -> int:
        return len(self._by_key)


def parse_campus_name(location: Optional[str]) -> Optional[str]:
    """
    Extract the campus name from a free-text location.

    "Main Campus - 123 Elm St, City" -> "Main Campus"; a location without
    the separator is returned whole.
    """
    if not location or not isinstance(location, str):
        return None
    campus = location.split(CAMPUS_SEPARATOR, 1)[0].strip()
    return campus or None


def full_name(person: RemoteResource) -> Optional[str]:
    attrs = person.attributes
    parts = [
        attrs.get('name_prefix'),
        attrs.get('first_name'),
        attrs.get('last_name'),
        attrs.get('name_suffix'),
    ]
    name = ' '.join(str(p).strip() for p in parts if p and str(p).strip())
    return name or None


def _primary_value(entries: Any, key: str) -> Optional[str]:
    if not isinstance(entries, list):
        return None
    entries = [e for e in entries if isinstance(e, dict)]
    if not entries:
        return None
    chosen = next((e for e in entries if e.get('primary')), entries[0])
    return chosen.get(key) or None


def primary_email(person: RemoteResource) -> Optional[str]:
    contact_data = person.attributes.get('contact_data') or {}
    if not isinstance(contact_data, dict):
        return None
    return _primary_value(contact_data.get('email_addresses'), 'address')


def primary_phone(person: RemoteResource) -> Optional[str]:
    contact_data = person.attributes.get('contact_data') or {}
    if not isinstance(contact_data, dict):
        return None
    return _primary_value(contact_data.get('phone_numbers'), 'number')


class EventTransformer:
    """Folds an event instance and its related resources into a LocalEvent."""

    def resolve_parent_event(
        self,
        instance: RemoteResource,
        index: ResourceIndex
    ) -> Optional[RemoteResource]:
        """
        Find the parent Event of an instance.

        Falls back to the first Event in the included set when the
        relationship or its target is missing.
        """
        event = index.get('Event', instance.related_id('event'))
        if event is None:
            event = index.first('Event')
        return event

    def resolve_owner(
        self,
        event: Optional[RemoteResource],
        index: ResourceIndex,
        enrichment: Optional[Enrichment] = None
    ) -> Optional[RemoteResource]:
        if event is None:
            return None
        owner = index.get('Person', event.related_id('owner'))
        if owner is None and enrichment is not None and enrichment.owner is not None:
            if enrichment.owner.kind == 'Person':
                owner = enrichment.owner
        return owner

    def to_local_event(
        self,
        instance: RemoteResource,
        index: ResourceIndex,
        enrichment: Optional[Enrichment] = None,
        synced_at: Optional[str] = None
    ) -> LocalEvent:
        """
        Transform an event instance into a local event row.

        Never raises; every field that cannot be resolved is None.

        Args:
            instance: EventInstance resource
            index: Index over the included resources of the listing
            enrichment: Tags, rooms and owner resolved by the caller
            synced_at: Timestamp to stamp on the row (default: now)

        Returns:
            LocalEvent keyed by the instance id
        """
        enrichment = enrichment or Enrichment()
        event = self.resolve_parent_event(instance, index)
        owner = self.resolve_owner(event, index, enrichment)

        event_attrs = event.attributes if event is not None else {}
        instance_attrs = instance.attributes
        owner_name = full_name(owner) if owner is not None else None

        rooms = None
        if enrichment.rooms is not None:
            rooms = [str(room) for room in enrichment.rooms]

        return LocalEvent(
            event_id=instance.id,
            title=_text(event_attrs.get('name')) or UNTITLED_EVENT,
            event_type=enrichment.event_type,
            description=_text(event_attrs.get('description')),
            start_at=_text(instance_attrs.get('starts_at')),
            end_at=_text(instance_attrs.get('ends_at')),
            campus=parse_campus_name(instance_attrs.get('location')),
            rooms=rooms,
            contact_name=owner_name,
            contact_email=primary_email(owner) if owner is not None else None,
            contact_phone=primary_phone(owner) if owner is not None else None,
            owner=owner_name,
            form_url=_text(event_attrs.get('registration_url')),
            parent_event_id=event.id if event is not None else instance.related_id('event'),
            synced_at=synced_at or _utc_now()
        )

    def to_form_submissions(
        self,
        event_id: str,
        requests: List[RemoteResource],
        included: Iterable[RemoteResource]
    ) -> List[FormSubmission]:
        """
        Transform event requests into form submission rows for one event.

        Args:
            event_id: Local event id the submissions belong to
            requests: EventRequest (or FormSubmission) resources
            included: Included resources of the request listing

        Returns:
            List of FormSubmission rows, one per distinct submission
        """
        index = included if isinstance(included, ResourceIndex) else ResourceIndex(included)
        submissions: Dict[str, FormSubmission] = {}

        for request in requests:
            submission = index.get('FormSubmission', request.related_id('form_submission'))
            if submission is None:
                if request.kind != 'FormSubmission':
                    logger.debug(
                        f"Event request {request.id} has no form submission, skipping"
                    )
                    continue
                submission = request

            submitter = (
                index.get('Person', request.related_id('submitter'))
                or index.get('Person', submission.related_id('submitter'))
                or index.get('Person', submission.related_id('person'))
            )

            attrs = submission.attributes
            responses = attrs.get('responses')
            if responses is None:
                responses = attrs.get('form_fields')

            submissions[submission.id] = FormSubmission(
                event_id=event_id,
                submission_id=submission.id,
                submitted_at=_text(attrs.get('created_at')),
                submitter_name=full_name(submitter) if submitter is not None else None,
                submitter_email=primary_email(submitter) if submitter is not None else None,
                responses=json.dumps(responses) if responses is not None else None
            )

        return list(submissions.values())


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
