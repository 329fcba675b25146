"""Shared pytest fixtures for DynamoDB-backed tests."""
import boto3
import pytest
from moto import mock_aws

from storage.dynamodb_manager import DynamoDBManager


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Point boto3 at fake credentials so nothing reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


def create_tables(dynamodb):
    """Create the events table, its dependent tables and the sync lock table."""
    dynamodb.create_table(
        TableName='events',
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )
    dynamodb.create_table(
        TableName='event_meta',
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )
    for table_name, sort_key in (
        ('event_form_submissions', 'submission_id'),
        ('event_timeline_notes', 'note_id'),
    ):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[
                {'AttributeName': 'event_id', 'KeyType': 'HASH'},
                {'AttributeName': sort_key, 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'event_id', 'AttributeType': 'S'},
                {'AttributeName': sort_key, 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
    dynamodb.create_table(
        TableName='sync_locks',
        KeySchema=[{'AttributeName': 'lock_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'lock_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def dynamodb_tables():
    """Create mock DynamoDB tables for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        create_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def dynamodb_manager(dynamodb_tables):
    """Create DynamoDBManager instance with mock tables."""
    return DynamoDBManager(region_name='us-east-1')
