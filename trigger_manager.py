#!/usr/bin/env python3
"""
Enable, disable or initialize DynamoDB stream triggers for a Lambda function.

Every option can also come from an environment variable of the same name
(operation, region, batch, function, log, concurrency, excludedStreams).

Usage:
    python trigger_manager.py -o init -r us-east-1 -f stream-processor --dry-run
    python trigger_manager.py -o enable -r us-east-1 -f stream-processor
    operation=disable region=us-east-1 function=stream-processor python trigger_manager.py
"""
import argparse
import logging
import os
import sys

from botocore.exceptions import BotoCoreError, ClientError

import stream_triggers
from stream_triggers import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_LOG_LEVEL,
    LOG_LEVELS,
    OPERATIONS,
    TriggerConfigError,
)

logger = logging.getLogger(__name__)


def build_parser(environ=None):
    """Build the argument parser, taking defaults from the environment."""
    environ = os.environ if environ is None else environ

    parser = argparse.ArgumentParser(
        description='Toggle DynamoDB stream triggers (event source mappings) in bulk'
    )
    parser.add_argument(
        '-o', '--operation',
        choices=OPERATIONS,
        default=environ.get('operation'),
        help='Operation to perform (init/enable/disable)'
    )
    parser.add_argument(
        '-r', '--region',
        default=environ.get('region'),
        help='AWS region'
    )
    parser.add_argument(
        '-b', '--batch',
        type=int,
        default=environ.get('batch', DEFAULT_BATCH_SIZE),
        help=f'Batch size for created triggers (default: {DEFAULT_BATCH_SIZE})'
    )
    parser.add_argument(
        '-f', '--function',
        default=environ.get('function'),
        help='Lambda function name'
    )
    parser.add_argument(
        '-l', '--log',
        choices=sorted(LOG_LEVELS),
        default=environ.get('log', DEFAULT_LOG_LEVEL).lower(),
        help=f'Logging level (default: {DEFAULT_LOG_LEVEL})'
    )
    parser.add_argument(
        '-c', '--concurrency',
        type=int,
        default=environ.get('concurrency', DEFAULT_CONCURRENCY),
        help=f'Maximum concurrent requests per step (default: {DEFAULT_CONCURRENCY})'
    )
    parser.add_argument(
        '-x', '--exclude',
        action='append',
        default=[],
        help='Table name or stream ARN to leave alone (repeatable)'
    )
    parser.add_argument(
        '--exclude-file',
        help='YAML file listing table names or stream ARNs to leave alone'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would change without creating or updating triggers'
    )
    return parser


def parse_args(argv=None, environ=None):
    """
    Parse and validate command-line arguments.

    Returns:
        (OperationContext, tuple of excluded streams)
    """
    environ = os.environ if environ is None else environ
    parser = build_parser(environ)
    args = parser.parse_args(argv)

    # argparse does not apply choices to defaults
    if args.operation not in OPERATIONS:
        parser.error(f"--operation is required and must be one of: {', '.join(OPERATIONS)}")

    try:
        context = stream_triggers.build_context(
            operation=args.operation,
            region=args.region,
            function_name=args.function,
            batch_size=args.batch,
            log_level=args.log,
            concurrency=args.concurrency,
            dry_run=args.dry_run,
        )
        excluded = list(args.exclude) + list(
            stream_triggers.parse_excluded_streams(environ.get('excludedStreams'))
        )
        if args.exclude_file:
            excluded.extend(stream_triggers.load_excluded_streams(args.exclude_file))
    except (TriggerConfigError, OSError) as e:
        parser.error(str(e))

    return context, stream_triggers.parse_excluded_streams(excluded)


def main(argv=None):
    context, excluded = parse_args(argv)
    stream_triggers.configure_logging(context.log_level)

    try:
        result = stream_triggers.run(context.operation, context, excluded)
    except (ClientError, BotoCoreError) as e:
        logger.error(f"{context.operation} failed: {e}")
        return 1

    return 0 if result is not None else 1


if __name__ == '__main__':
    sys.exit(main())
