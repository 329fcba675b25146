"""DynamoDB manager for event storage operations."""
import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.models import (
    DEFAULT_EVENT_STATUS,
    EVENT_STATUSES,
    EventMeta,
    FormSubmission,
    LocalEvent,
    TimelineNote,
)

logger = logging.getLogger(__name__)

# Columns written by sync; event_meta columns are never among them
SYNC_COLUMNS = (
    'title',
    'event_type',
    'description',
    'start_at',
    'end_at',
    'campus',
    'rooms',
    'contact_name',
    'contact_email',
    'contact_phone',
    'owner',
    'form_url',
    'parent_event_id',
    'synced_at',
)

META_COLUMNS = (
    'status',
    'coordinator_id',
    'setup_notes',
    'estimated_attendance',
    'event_locations',
    'additional_comments',
)

MAX_TIMELINE_AUTHOR_LENGTH = 100
MAX_TIMELINE_NOTE_LENGTH = 2000


class DynamoDBManager:
    """Manager for the events, event_meta and dependent tables."""

    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems limit

    def __init__(
        self,
        events_table: str = 'events',
        meta_table: str = 'event_meta',
        submissions_table: str = 'event_form_submissions',
        notes_table: str = 'event_timeline_notes',
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource and table references.

        Args:
            events_table: Table holding synced event rows
            meta_table: Table holding locally owned event metadata
            submissions_table: Table holding form submissions per event
            notes_table: Table holding timeline notes per event
            region_name: Optional AWS region override
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        # Resource client: takes plain Python values, not DynamoDB typed ones
        self.client = self.dynamodb.meta.client
        self.events_table = self.dynamodb.Table(events_table)
        self.meta_table = self.dynamodb.Table(meta_table)
        self.submissions_table = self.dynamodb.Table(submissions_table)
        self.notes_table = self.dynamodb.Table(notes_table)
        logger.info(f"Initialized DynamoDBManager for table: {events_table}")

    # Events

    def get_event_ids(self) -> Set[str]:
        """
        Retrieve the ids of all local events using a projected Scan.

        Returns:
            Set of event ids
        """
        logger.info("Scanning events table for existing ids")
        items = self._scan(self.events_table, ProjectionExpression='event_id')
        event_ids = {item['event_id'] for item in items}
        logger.info(f"Retrieved {len(event_ids)} event ids from DynamoDB")
        return event_ids

    def get_event(self, event_id: str) -> Optional[LocalEvent]:
        response = self.events_table.get_item(Key={'event_id': event_id})
        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def create_event(self, event: LocalEvent) -> None:
        """
        Insert a new event together with its default metadata row.

        Both puts run in one transaction, so an event never exists without
        metadata. A metadata row left behind by an interrupted delete is
        reset to the defaults.

        Raises:
            ClientError: If the event already exists or the transaction
                otherwise fails
        """
        meta = EventMeta(event_id=event.event_id, updated_at=_utc_now())
        self.client.transact_write_items(
            TransactItems=[
                {
                    'Put': {
                        'TableName': self.events_table.name,
                        'Item': self._event_to_item(event),
                        'ConditionExpression': 'attribute_not_exists(event_id)'
                    }
                },
                {
                    'Put': {
                        'TableName': self.meta_table.name,
                        'Item': self._meta_to_item(meta)
                    }
                },
            ]
        )
        logger.debug(f"Created event {event.event_id} with default metadata")

    def update_event(self, event: LocalEvent) -> None:
        """
        Overwrite the sync-owned columns of an existing event.

        Raises:
            ClientError: If the event no longer exists or the update fails
        """
        item = self._event_to_item(event)
        names = {f'#{column}': column for column in SYNC_COLUMNS}
        values = {f':{column}': item[column] for column in SYNC_COLUMNS}
        assignments = ', '.join(f'#{column} = :{column}' for column in SYNC_COLUMNS)

        self.events_table.update_item(
            Key={'event_id': event.event_id},
            UpdateExpression=f'SET {assignments}',
            ConditionExpression='attribute_exists(event_id)',
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values
        )

    def delete_events(self, event_ids: List[str]) -> int:
        """
        Delete events and cascade to their dependent rows.

        Event rows go first, so a failure part way never leaves an event
        without its metadata. Metadata left behind by a failed delete is reset
        when the event is created again.

        Args:
            event_ids: List of event IDs to delete

        Returns:
            Count of deleted events

        Raises:
            ClientError: If any delete fails
        """
        if not event_ids:
            return 0

        logger.info(f"Deleting {len(event_ids)} events from DynamoDB")

        with self.events_table.batch_writer() as writer:
            for event_id in event_ids:
                writer.delete_item(Key={'event_id': event_id})

        with self.meta_table.batch_writer() as writer:
            for event_id in event_ids:
                writer.delete_item(Key={'event_id': event_id})

        for event_id in event_ids:
            self._delete_children(self.submissions_table, event_id, 'submission_id')
            self._delete_children(self.notes_table, event_id, 'note_id')

        logger.info(f"Successfully deleted {len(event_ids)} events")
        return len(event_ids)

    def get_sync_status(self) -> Dict[str, Any]:
        """
        Summarize the events table.

        Returns:
            Dict with totalEvents and lastSyncAt (latest synced_at or None)
        """
        items = self._scan(
            self.events_table,
            ProjectionExpression='event_id, synced_at'
        )
        synced = [item['synced_at'] for item in items if item.get('synced_at')]
        return {
            'totalEvents': len(items),
            'lastSyncAt': max(synced) if synced else None
        }

    # Metadata

    def get_event_meta(self, event_id: str) -> Optional[EventMeta]:
        response = self.meta_table.get_item(Key={'event_id': event_id})
        item = response.get('Item')
        return self._item_to_meta(item) if item else None

    def ensure_event_meta(self, event_id: str) -> bool:
        """
        Create the default metadata row if it does not exist yet.

        Returns:
            True if a row was created, False if one already existed
        """
        meta = EventMeta(event_id=event_id, updated_at=_utc_now())
        try:
            self.meta_table.put_item(
                Item=self._meta_to_item(meta),
                ConditionExpression='attribute_not_exists(event_id)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                return False
            raise
        return True

    def update_event_meta(self, event_id: str, **updates: Any) -> EventMeta:
        """
        Apply coordinator edits to an event's metadata, creating it if needed.

        Args:
            event_id: Event to update
            **updates: Any of status, coordinator_id, setup_notes,
                estimated_attendance, event_locations, additional_comments

        Returns:
            The metadata after the update

        Raises:
            ValueError: For unknown fields or an invalid status
        """
        unknown = set(updates) - set(META_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown metadata fields: {', '.join(sorted(unknown))}")
        if 'status' in updates and updates['status'] not in EVENT_STATUSES:
            raise ValueError(f"Invalid status: {updates['status']}")

        fields = dict(updates)
        fields['updated_at'] = _utc_now()
        names = {f'#{column}': column for column in fields}
        values = {f':{column}': value for column, value in fields.items()}
        assignments = [f'#{column} = :{column}' for column in fields]
        if 'status' not in fields:
            names['#status'] = 'status'
            values[':default_status'] = DEFAULT_EVENT_STATUS
            assignments.append('#status = if_not_exists(#status, :default_status)')

        response = self.meta_table.update_item(
            Key={'event_id': event_id},
            UpdateExpression='SET ' + ', '.join(assignments),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues='ALL_NEW'
        )
        return self._item_to_meta(response['Attributes'])

    # Form submissions

    def get_form_submissions(self, event_id: str) -> List[FormSubmission]:
        items = self._query(self.submissions_table, event_id)
        return [FormSubmission(**_pick(item, FormSubmission)) for item in items]

    def replace_form_submissions(
        self,
        event_id: str,
        submissions: List[FormSubmission]
    ) -> int:
        """
        Replace all stored submissions of an event with a fresh set.

        Runs as a single transaction when it fits the transaction limit,
        otherwise as a delete pass followed by a write pass.

        Returns:
            Count of submissions written
        """
        new_ids = {s.submission_id for s in submissions}
        stale_ids = [
            item['submission_id']
            for item in self._query(self.submissions_table, event_id, 'submission_id')
            if item['submission_id'] not in new_ids
        ]
        items = [_drop_none(asdict(s)) for s in submissions if s.event_id == event_id]

        if len(stale_ids) + len(items) <= self.TRANSACTION_LIMIT:
            if stale_ids or items:
                table = self.submissions_table.name
                operations = [
                    {
                        'Delete': {
                            'TableName': table,
                            'Key': {'event_id': event_id, 'submission_id': submission_id}
                        }
                    }
                    for submission_id in stale_ids
                ]
                operations.extend(
                    {'Put': {'TableName': table, 'Item': item}}
                    for item in items
                )
                self.client.transact_write_items(TransactItems=operations)
        else:
            logger.warning(
                f"Replacing {len(items)} submissions for event {event_id} "
                f"without a transaction"
            )
            with self.submissions_table.batch_writer() as writer:
                for submission_id in stale_ids:
                    writer.delete_item(
                        Key={'event_id': event_id, 'submission_id': submission_id}
                    )
            with self.submissions_table.batch_writer() as writer:
                for item in items:
                    writer.put_item(Item=item)

        return len(items)

    # Timeline notes

    def add_timeline_note(self, event_id: str, author_name: str, note: str) -> TimelineNote:
        """
        Add a coordinator note to an event's timeline.

        Raises:
            ValueError: If the author or note is empty or too long
        """
        author_name = (author_name or '').strip()
        note = (note or '').strip()
        if not author_name:
            raise ValueError("Author name is required")
        if len(author_name) > MAX_TIMELINE_AUTHOR_LENGTH:
            raise ValueError(
                f"Author name must be at most {MAX_TIMELINE_AUTHOR_LENGTH} characters"
            )
        if not note:
            raise ValueError("Note is required")
        if len(note) > MAX_TIMELINE_NOTE_LENGTH:
            raise ValueError(f"Note must be at most {MAX_TIMELINE_NOTE_LENGTH} characters")

        created_at = _utc_now()
        timeline_note = TimelineNote(
            event_id=event_id,
            note_id=f"{created_at}#{uuid.uuid4().hex[:8]}",
            author_name=author_name,
            note=note,
            created_at=created_at
        )
        self.notes_table.put_item(Item=asdict(timeline_note))
        return timeline_note

    def get_timeline_notes(self, event_id: str) -> List[TimelineNote]:
        """Return an event's timeline notes, newest first."""
        items = self._query(self.notes_table, event_id, ScanIndexForward=False)
        return [TimelineNote(**_pick(item, TimelineNote)) for item in items]

    def delete_timeline_note(self, event_id: str, note_id: str) -> bool:
        """
        Delete a timeline note.

        Returns:
            True if a note was deleted, False if it did not exist
        """
        response = self.notes_table.delete_item(
            Key={'event_id': event_id, 'note_id': note_id},
            ReturnValues='ALL_OLD'
        )
        return 'Attributes' in response

    # Helpers

    def _scan(self, table, **kwargs) -> List[Dict[str, Any]]:
        try:
            response = table.scan(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))

            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
            raise

    def _query(
        self,
        table,
        event_id: str,
        projection: Optional[str] = None,
        **kwargs
    ) -> List[Dict[str, Any]]:
        kwargs['KeyConditionExpression'] = Key('event_id').eq(event_id)
        if projection:
            kwargs['ProjectionExpression'] = projection
        response = table.query(**kwargs)
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = table.query(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _delete_children(self, table, event_id: str, sort_key: str) -> None:
        keys = self._query(table, event_id, sort_key)
        if not keys:
            return
        with table.batch_writer() as writer:
            for item in keys:
                writer.delete_item(Key={'event_id': event_id, sort_key: item[sort_key]})

    def _event_to_item(self, event: LocalEvent) -> Dict[str, Any]:
        """
        Convert LocalEvent object to DynamoDB item.

        Every sync column is present so updates clear stale values.
        """
        item = asdict(event)
        if item['rooms'] is not None:
            item['rooms'] = list(item['rooms'])
        return item

    def _item_to_event(self, item: Dict[str, Any]) -> LocalEvent:
        values = _pick(item, LocalEvent)
        if values.get('rooms') is not None:
            values['rooms'] = [str(room) for room in values['rooms']]
        return LocalEvent(**values)

    def _meta_to_item(self, meta: EventMeta) -> Dict[str, Any]:
        return _drop_none(asdict(meta))

    def _item_to_meta(self, item: Dict[str, Any]) -> EventMeta:
        values = _pick(item, EventMeta)
        if values.get('coordinator_id') is not None:
            values['coordinator_id'] = int(values['coordinator_id'])
        return EventMeta(**values)


def _pick(item: Dict[str, Any], model) -> Dict[str, Any]:
    names = model.__dataclass_fields__.keys()
    values = {name: item.get(name) for name in names}
    return values


def _drop_none(item: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in item.items() if value is not None}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
