"""
Trigger Manager Lambda

Invoked with a payload like:

    {"operation": "enable", "excludedStreams": ["Sessions"]}

Region, function name, batch size, log level and concurrency come from the
function's environment (region, function, batch, log, concurrency).
Registry failures are re-raised so the invocation is marked failed.
"""

import json
import logging
import os

import stream_triggers

logger = logging.getLogger(__name__)


def context_from_environ(operation, environ=None):
    """Build the operation context from Lambda environment variables."""
    environ = os.environ if environ is None else environ
    return stream_triggers.build_context(
        operation=operation,
        region=environ.get('region') or environ.get('AWS_REGION'),
        function_name=environ.get('function'),
        batch_size=environ.get('batch', stream_triggers.DEFAULT_BATCH_SIZE),
        log_level=environ.get('log', stream_triggers.DEFAULT_LOG_LEVEL),
        concurrency=environ.get('concurrency', stream_triggers.DEFAULT_CONCURRENCY),
        dry_run=environ.get('dryRun', 'false').lower() == 'true',
    )


def lambda_handler(event, context):
    """Run the requested operation and summarize what it touched."""
    event = event or {}
    operation = event.get('operation')
    # Unknown operations are reported without reading the function settings
    if not stream_triggers.check_operation(operation):
        return {'operation': operation, 'status': 'unsupported'}

    trigger_context = context_from_environ(operation)
    stream_triggers.configure_logging(trigger_context.log_level)

    logger.info(f"Event: {json.dumps(event)}")
    excluded = stream_triggers.parse_excluded_streams(event.get('excludedStreams'))

    result = stream_triggers.run(operation, trigger_context, excluded)
    if result is None:
        return {'operation': operation, 'status': 'unsupported'}

    return {
        'operation': operation,
        'status': 'ok',
        'count': len(result),
        'resources': result,
    }
