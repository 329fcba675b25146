"""Data models for calendar sync."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


EVENT_STATUSES = ('not_contacted', 'contacted', 'completed')
DEFAULT_EVENT_STATUS = 'not_contacted'


@dataclass
class RemoteResource:
    """JSON:API resource from the PCO Calendar API, tagged by kind."""
    kind: str
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    relationships: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> Optional['RemoteResource']:
        """
        Build a resource from a JSON:API resource object.

        Returns None when the object has no type or id.
        """
        if not isinstance(data, dict):
            return None
        kind = data.get('type')
        resource_id = data.get('id')
        if not kind or resource_id is None:
            return None
        attributes = data.get('attributes')
        relationships = data.get('relationships')
        return cls(
            kind=str(kind),
            id=str(resource_id),
            attributes=attributes if isinstance(attributes, dict) else {},
            relationships=relationships if isinstance(relationships, dict) else {}
        )

    def related_id(self, name: str) -> Optional[str]:
        """Return the id of a to-one relationship, or None."""
        relationship = self.relationships.get(name)
        if not isinstance(relationship, dict):
            return None
        data = relationship.get('data')
        if not isinstance(data, dict) or data.get('id') is None:
            return None
        return str(data['id'])


@dataclass
class Page:
    """One page of a paginated API response."""
    items: List[RemoteResource]
    included: List[RemoteResource]
    next_endpoint: Optional[str]


@dataclass
class Enrichment:
    """Per-instance data resolved by secondary API calls."""
    event_type: Optional[str] = None
    rooms: Optional[List[str]] = None
    owner: Optional[RemoteResource] = None


@dataclass
class LocalEvent:
    """Local event row, one per upstream event instance."""
    event_id: str
    title: str
    event_type: Optional[str]
    description: Optional[str]
    start_at: Optional[str]
    end_at: Optional[str]
    campus: Optional[str]
    rooms: Optional[List[str]]
    contact_name: Optional[str]
    contact_email: Optional[str]
    contact_phone: Optional[str]
    owner: Optional[str]
    form_url: Optional[str]
    parent_event_id: Optional[str]
    synced_at: str


@dataclass
class EventMeta:
    """Locally owned metadata edited by coordinators."""
    event_id: str
    status: str = DEFAULT_EVENT_STATUS
    coordinator_id: Optional[int] = None
    setup_notes: Optional[str] = None
    estimated_attendance: Optional[str] = None
    event_locations: Optional[str] = None
    additional_comments: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class FormSubmission:
    """Event request form submission attached to a local event."""
    event_id: str
    submission_id: str
    submitted_at: Optional[str]
    submitter_name: Optional[str]
    submitter_email: Optional[str]
    responses: Optional[str]


@dataclass
class TimelineNote:
    event_id: str
    note_id: str
    author_name: str
    note: str
    created_at: str


@dataclass
class SyncResult:
    """Result of sync operation."""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    total: int = 0
    excluded: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'total': self.total,
            'excluded': self.excluded,
            'errors': list(self.errors),
            'durationMs': self.duration_ms,
            'timedOut': self.timed_out
        }
