"""AWS Lambda handler for PCO Calendar event sync."""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pco.calendar_api import PcoCalendarClient
from processor.event_transformer import EventTransformer
from processor.models import SyncResult
from storage.dynamodb_manager import DynamoDBManager
from sync.config import SyncConfig
from sync.gate import SyncGate
from sync.sync_engine import SyncEngine

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_LOG_ATTRS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def build_gate(config: SyncConfig) -> SyncGate:
    return SyncGate(
        table_name=config.lock_table,
        min_interval_seconds=config.min_sync_interval_seconds,
        lease_seconds=config.lock_lease_seconds
    )


def build_storage(config: SyncConfig) -> DynamoDBManager:
    return DynamoDBManager(
        events_table=config.events_table,
        meta_table=config.meta_table,
        submissions_table=config.submissions_table,
        notes_table=config.notes_table
    )


def build_engine(config: SyncConfig) -> SyncEngine:
    """
    Wire up the API client, store and engine from configuration.

    Raises:
        ConfigurationError: If the PCO credentials are missing
    """
    client = PcoCalendarClient(
        app_id=config.app_id,
        secret=config.secret,
        base_url=config.base_url,
        timeout=config.timeout_seconds
    )
    return SyncEngine(
        client=client,
        storage=build_storage(config),
        transformer=EventTransformer(),
        excluded_event_types=config.excluded_event_types,
        request_delay=config.request_delay_ms / 1000.0,
        deadline_seconds=config.deadline_seconds
    )


def run_sync(
    days_ahead: Optional[int] = None,
    config: Optional[SyncConfig] = None,
    engine: Optional[SyncEngine] = None
) -> SyncResult:
    """Run a single sync pass with configuration from the environment."""
    config = config or SyncConfig.from_env()
    engine = engine or build_engine(config)
    return engine.run_sync(
        days_ahead=days_ahead if days_ahead is not None else config.days_ahead
    )


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def _failure(logger: logging.Logger, error: Exception, start_time: float) -> Dict[str, Any]:
    duration = time.time() - start_time
    logger.error(
        f"Lambda execution failed: {str(error)}",
        extra={
            'duration_seconds': round(duration, 2),
            'error_type': type(error).__name__
        },
        exc_info=True
    )
    return _response(500, {
        'ok': False,
        'message': 'Sync failed',
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(duration, 2)
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for PCO Calendar event sync.

    Args:
        event: EventBridge schedule payload, {"trigger": "manual"} for a
            rate-limited manual run, or {"action": "status"}
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    event = event or {}
    start_time = time.time()

    try:
        config = SyncConfig.from_env()
    except Exception as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {e}", exc_info=True)
        return _response(500, {
            'ok': False,
            'message': 'Invalid configuration',
            'error': str(e),
            'error_type': type(e).__name__
        })

    # Initialize logging
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    if event.get('action') == 'status':
        try:
            status = build_storage(config).get_sync_status()
        except Exception as e:
            logger.error(f"Failed to read sync status: {e}", exc_info=True)
            return _response(500, {'ok': False, 'error': str(e)})
        return _response(200, {'ok': True, **status})

    manual = event.get('trigger') == 'manual'
    try:
        engine = build_engine(config)
        gate = build_gate(config)
        acquired, wait_seconds = gate.try_acquire(rate_limited=manual)
    except Exception as e:
        return _failure(logger, e, start_time)

    if not acquired:
        if wait_seconds:
            logger.warning(f"Manual sync rate limited for {wait_seconds} seconds")
            return _response(429, {
                'ok': False,
                'error': f"Rate limited. Please wait {wait_seconds} seconds before syncing again."
            })
        logger.warning("Sync already in progress")
        return _response(409, {'ok': False, 'error': 'Sync already in progress'})

    # Log Lambda execution start
    logger.info(
        "Lambda execution started",
        extra={
            'trigger': 'manual' if manual else 'scheduled',
            'events_table': config.events_table,
            'days_ahead': config.days_ahead
        }
    )

    try:
        result = run_sync(config.days_ahead, config, engine)
    except Exception as e:
        return _failure(logger, e, start_time)
    finally:
        gate.release()

    body = result.to_dict()
    body['syncedAt'] = datetime.now(timezone.utc).isoformat()

    if result.errors and result.total == 0:
        logger.error("Sync failed", extra={'errors': result.errors})
        body['message'] = 'Sync failed'
        return _response(500, body)

    if result.errors:
        logger.warning(
            "Sync completed with errors",
            extra={'errors': result.errors, 'durationMs': result.duration_ms}
        )
        body['message'] = 'Sync completed with errors'
    else:
        body['message'] = 'Sync completed successfully'

    # Log execution summary
    logger.info(
        "Lambda execution completed",
        extra={
            'duration_ms': result.duration_ms,
            'events_created': result.created,
            'events_updated': result.updated,
            'events_deleted': result.deleted,
            'events_excluded': result.excluded
        }
    )
    return _response(200, body)
