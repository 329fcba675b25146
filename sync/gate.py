"""Guard against overlapping or too frequent sync runs."""
import logging
import math
import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class SyncGate:
    """
    Admits one sync run at a time and spaces out rate-limited triggers.

    The state lives in a single DynamoDB item, so every Lambda container
    sees the same lock. The lock is a lease: a run that dies without
    releasing it blocks other runs only until the lease expires.

    Scheduled runs only need the overlap guard; manual runs also respect
    the minimum interval since the previous manual run started.
    """

    LOCK_ID = 'sync'

    def __init__(
        self,
        table_name: str = 'sync_locks',
        min_interval_seconds: float = 60,
        lease_seconds: float = 900,
        region_name: Optional[str] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the gate.

        Args:
            table_name: Table keyed by lock_id holding the lock item
            min_interval_seconds: Minimum spacing between manual runs
            lease_seconds: How long an unreleased lock blocks other runs
            region_name: Optional AWS region override
            clock: Wall clock in epoch seconds, shared by all containers
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self.min_interval_seconds = min_interval_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._token: Optional[str] = None

    def seconds_until_allowed(self) -> int:
        return self._wait_seconds(self._load(), self._clock())

    def try_acquire(self, rate_limited: bool = True) -> Tuple[bool, int]:
        """
        Try to start a run.

        Returns:
            Tuple of (acquired, wait_seconds). wait_seconds is non-zero only
            when the run was refused by the interval gate.
        """
        now = self._clock()
        token = uuid.uuid4().hex
        condition = (
            Attr('lease_expires_at').not_exists()
            | Attr('lease_expires_at').lte(_decimal(now))
        )
        assignments = ['lease_expires_at = :expires', 'lease_token = :token']
        values = {':expires': _decimal(now + self.lease_seconds), ':token': token}
        if rate_limited:
            condition = condition & (
                Attr('last_manual_start').not_exists()
                | Attr('last_manual_start').lte(_decimal(now - self.min_interval_seconds))
            )
            assignments.append('last_manual_start = :now')
            values[':now'] = _decimal(now)

        try:
            self.table.update_item(
                Key={'lock_id': self.LOCK_ID},
                UpdateExpression='SET ' + ', '.join(assignments),
                ConditionExpression=condition,
                ExpressionAttributeValues=values
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                raise
            wait = self._wait_seconds(self._load(), now) if rate_limited else 0
            return False, wait

        self._token = token
        return True, 0

    def release(self) -> None:
        """Release the lock if this gate still holds it."""
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            self.table.update_item(
                Key={'lock_id': self.LOCK_ID},
                UpdateExpression='REMOVE lease_expires_at, lease_token',
                ConditionExpression=Attr('lease_token').eq(token)
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                raise
            logger.warning("Sync lock lease expired before release")

    @property
    def running(self) -> bool:
        expires = self._load().get('lease_expires_at')
        return expires is not None and float(expires) > self._clock()

    def _load(self) -> Dict[str, Any]:
        response = self.table.get_item(Key={'lock_id': self.LOCK_ID}, ConsistentRead=True)
        return response.get('Item') or {}

    def _wait_seconds(self, item: Dict[str, Any], now: float) -> int:
        last_started = item.get('last_manual_start')
        if last_started is None:
            return 0
        remaining = self.min_interval_seconds - (now - float(last_started))
        return max(0, math.ceil(remaining))


def _decimal(value: float) -> Decimal:
    return Decimal(str(round(value, 3)))
