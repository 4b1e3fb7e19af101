"""
Bulk management of DynamoDB stream triggers (Lambda event source mappings).

Three operations share the same list -> fan out -> join shape:

    init     list tables, describe each one, create a disabled trigger per stream
    enable   list a function's triggers, set Enabled=True on each
    disable  list a function's triggers, set Enabled=False on each

Usage:
    from stream_triggers import build_context, run

    ctx = build_context('enable', region='us-east-1', function_name='processor')
    run(ctx.operation, ctx, excluded_streams=['Sessions'])
"""

import logging
import os
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# Set by the Lambda runtime; used to detect the managed environment
IS_LAMBDA = bool(os.environ.get('LAMBDA_TASK_ROOT'))

OPERATIONS = ('init', 'enable', 'disable')

DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 10000
DEFAULT_CONCURRENCY = 16
DEFAULT_LOG_LEVEL = 'info'
STARTING_POSITION = 'LATEST'

LOG_LEVELS = {
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
}

OperationContext = namedtuple(
    'OperationContext',
    ['operation', 'region', 'function_name', 'batch_size', 'log_level',
     'concurrency', 'dry_run'],
)

_clients = {}


class TriggerConfigError(ValueError):
    """Raised when the operation context cannot be built from the given settings."""


def _get_client(service, region):
    """Get or create a boto3 client for the service in the region."""
    key = (service, region)
    if key not in _clients:
        _clients[key] = boto3.client(service, region_name=region)
    return _clients[key]


def reset_clients():
    """Drop cached clients (used by tests)."""
    _clients.clear()


def configure_logging(level=DEFAULT_LOG_LEVEL):
    """
    Configure logging for the given level name (error/warn/info/debug).

    Inside Lambda the runtime already installs a handler on the root logger,
    so only the level is set there.
    """
    numeric_level = LOG_LEVELS.get(str(level).lower())
    if numeric_level is None:
        raise TriggerConfigError(f"Unknown log level: {level}")

    if IS_LAMBDA:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(
            level=numeric_level,
            format='%(asctime)s %(levelname)s: %(message)s',
            datefmt='%y-%m-%d %H:%M:%S',
        )
    logger.setLevel(numeric_level)
    return numeric_level


def build_context(operation, region, function_name, batch_size=DEFAULT_BATCH_SIZE,
                  log_level=DEFAULT_LOG_LEVEL, concurrency=DEFAULT_CONCURRENCY,
                  dry_run=False):
    """
    Validate settings and build the read-only context passed to every operation.

    The operation name is not checked here; the dispatcher owns that.

    Raises:
        TriggerConfigError: if any setting is missing or out of range
    """
    if not region:
        raise TriggerConfigError("A region is required")
    if not function_name:
        raise TriggerConfigError("A Lambda function name is required")

    try:
        batch_size = int(batch_size)
    except (TypeError, ValueError):
        raise TriggerConfigError(f"Batch size must be an integer, got {batch_size!r}")
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise TriggerConfigError(f"Batch size must be between 1 and {MAX_BATCH_SIZE}")

    try:
        concurrency = int(concurrency)
    except (TypeError, ValueError):
        raise TriggerConfigError(f"Concurrency must be an integer, got {concurrency!r}")
    if concurrency < 1:
        raise TriggerConfigError("Concurrency must be at least 1")

    log_level = str(log_level or DEFAULT_LOG_LEVEL).lower()
    if log_level not in LOG_LEVELS:
        raise TriggerConfigError(f"Unknown log level: {log_level}")

    return OperationContext(
        operation=operation,
        region=region,
        function_name=function_name,
        batch_size=batch_size,
        log_level=log_level,
        concurrency=concurrency,
        dry_run=bool(dry_run),
    )


def parse_excluded_streams(value):
    """
    Normalize an exclusion list.

    Args:
        value: None, a list of names/ARNs, or a comma-separated string

    Returns:
        Sorted tuple of unique, non-empty entries
    """
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(sorted({str(v).strip() for v in value if str(v).strip()}))


def load_excluded_streams(path):
    """
    Read excluded table names / stream ARNs from a YAML file.

    The file holds either a plain list or a mapping with an
    'excludedStreams' key.
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TriggerConfigError(f"{path}: invalid YAML ({e})")

    if isinstance(data, dict):
        data = data.get('excludedStreams')
    if data is not None and not isinstance(data, (list, str)):
        raise TriggerConfigError(f"{path}: excludedStreams must be a list")
    return parse_excluded_streams(data)


def table_name_from_stream_arn(stream_arn):
    """
    Extract the table name from a DynamoDB stream ARN.

    arn:aws:dynamodb:us-east-1:123456789012:table/Orders/stream/2024-01-01T00:00:00.000
    -> 'Orders'
    """
    if not stream_arn:
        return None
    parts = stream_arn.split(':', 5)
    if len(parts) < 6:
        return None
    resource = parts[5].split('/')
    if len(resource) >= 2 and resource[0] == 'table':
        return resource[1]
    return None


def fan_out(func, items, max_workers):
    """
    Call func on every item concurrently and wait for all of them.

    Results are returned in input order. The first exception raised by a
    call propagates after the already-submitted calls have finished.
    """
    items = list(items)
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        futures = [executor.submit(func, item) for item in items]
        return [future.result() for future in futures]


def list_table_names(context):
    """List every DynamoDB table name in the context's region."""
    dynamodb = _get_client('dynamodb', context.region)
    table_names = []
    try:
        paginator = dynamodb.get_paginator('list_tables')
        for page in paginator.paginate():
            table_names.extend(page.get('TableNames', []))
    except (ClientError, BotoCoreError):
        logger.error("Failed to retrieve tables")
        raise

    logger.debug(f"Found {len(table_names)} table(s) in {context.region}")
    return table_names


def describe_stream_arn(context, table_name):
    """Return the table's latest stream ARN, or None if streams are off."""
    dynamodb = _get_client('dynamodb', context.region)
    try:
        response = dynamodb.describe_table(TableName=table_name)
    except (ClientError, BotoCoreError):
        logger.error(f"Failed to describe table {table_name}")
        raise
    return response['Table'].get('LatestStreamArn')


def list_trigger_mappings(context):
    """List the event source mappings attached to the context's function."""
    lambda_client = _get_client('lambda', context.region)
    mappings = []
    try:
        paginator = lambda_client.get_paginator('list_event_source_mappings')
        for page in paginator.paginate(FunctionName=context.function_name):
            mappings.extend(page.get('EventSourceMappings', []))
    except (ClientError, BotoCoreError):
        logger.error("Failed to retrieve event source mappings")
        raise
    return mappings


def _is_excluded(excluded, table_name=None, stream_arn=None):
    if not excluded:
        return False
    if table_name and table_name in excluded:
        return True
    return bool(stream_arn) and stream_arn in excluded


def init_triggers(context, excluded_streams=None):
    """
    Create a disabled trigger from every table stream to the function.

    Tables without an active stream are skipped with a warning.

    Returns:
        Names of the tables a trigger was created (or would be created) for
    """
    excluded = set(parse_excluded_streams(excluded_streams))
    lambda_client = _get_client('lambda', context.region)

    table_names = [
        name for name in list_table_names(context)
        if not _is_excluded(excluded, table_name=name)
    ]

    def describe(table_name):
        return {
            'name': table_name,
            'stream_arn': describe_stream_arn(context, table_name),
        }

    tables = fan_out(describe, table_names, context.concurrency)

    streamed = []
    for table in tables:
        if not table['stream_arn']:
            logger.warning(f"Skipping {table['name']}: no stream enabled")
        elif _is_excluded(excluded, stream_arn=table['stream_arn']):
            logger.info(f"Skipping {table['name']}: stream excluded")
        else:
            streamed.append(table)

    def create(table):
        if context.dry_run:
            logger.info(f"Would create trigger for {table['name']}")
            return table['name']
        try:
            lambda_client.create_event_source_mapping(
                BatchSize=context.batch_size,
                Enabled=False,
                EventSourceArn=table['stream_arn'],
                FunctionName=context.function_name,
                StartingPosition=STARTING_POSITION,
            )
        except (ClientError, BotoCoreError):
            logger.error(f"Failed to create trigger for {table['name']}")
            raise
        logger.info(f"Created trigger for {table['name']}")
        return table['name']

    created = fan_out(create, streamed, context.concurrency)
    logger.info("Completed creating triggers")
    return created


def set_triggers_enabled(context, enabled, excluded_streams=None):
    """
    Set Enabled on every trigger of the context's function.

    Only the UUID and the flag are sent, so source, function and batch
    size are left as they are.

    Returns:
        UUIDs of the updated (or, in dry-run mode, matching) triggers
    """
    verb, progress = ('enable', 'enabling') if enabled else ('disable', 'disabling')
    excluded = set(parse_excluded_streams(excluded_streams))
    lambda_client = _get_client('lambda', context.region)

    uuids = []
    for mapping in list_trigger_mappings(context):
        source_arn = mapping.get('EventSourceArn')
        if _is_excluded(excluded, table_name=table_name_from_stream_arn(source_arn),
                        stream_arn=source_arn):
            logger.info(f"Skipping event source mapping {mapping['UUID']}: stream excluded")
            continue
        uuids.append(mapping['UUID'])

    def update(uuid):
        if context.dry_run:
            logger.info(f"Would {verb} event source mapping {uuid}")
            return uuid
        try:
            lambda_client.update_event_source_mapping(UUID=uuid, Enabled=enabled)
        except (ClientError, BotoCoreError):
            logger.error(f"Failed to {verb} event source mapping {uuid}")
            raise
        logger.debug(f"Updated event source mapping {uuid} (Enabled={enabled})")
        return uuid

    updated = fan_out(update, uuids, context.concurrency)
    logger.info(f"Completed {progress} triggers")
    return updated


def enable_triggers(context, excluded_streams=None):
    return set_triggers_enabled(context, True, excluded_streams)


def disable_triggers(context, excluded_streams=None):
    return set_triggers_enabled(context, False, excluded_streams)


_SCRIPTS = {
    'init': init_triggers,
    'enable': enable_triggers,
    'disable': disable_triggers,
}


def check_operation(operation):
    """Return True for a known operation name; log an error otherwise."""
    if operation in OPERATIONS:
        return True
    logger.error(f"The specified operation ({operation}) is not valid.")
    return False


def run(operation, context, excluded_streams=None):
    """
    Run one operation by name.

    An unknown name is logged and nothing else happens (returns None).
    Registry failures propagate to the caller.
    """
    if not check_operation(operation):
        return None

    logger.info(f"Running {operation} for {context.function_name} in {context.region}"
                f"{' (dry run)' if context.dry_run else ''}")
    return _SCRIPTS[operation](context, excluded_streams)
