"""
Linha de comando do cpedict.

Exemplo:
    python -m cpedict fetch --dbtype sqlite3 --dbpath cpe.sqlite3 --source cpes.json
"""

import argparse
import logging
import sys
from typing import List, Optional

from marshmallow import ValidationError

from cpedict import __version__
from cpedict.config.fetch_config import ConfigError, FetchConfig
from cpedict.db import DIALECTS, CpeDictError, LockedError
from cpedict.jobs.fetch_job import FetchJob, FetchScheduler
from cpedict.models.types import FetchType
from cpedict.schemas.cpe_schema import load_cpes_from_file
from cpedict.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 3


def build_parser(defaults: FetchConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cpedict', description="CPE dictionary storage")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--log-level', default=defaults.log_level,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        type=str.upper, help="Log level")
    parser.add_argument('--log-dir', default=defaults.log_dir, help="Directory for JSON log files")
    parser.add_argument('--dbtype', default=defaults.db_type, choices=DIALECTS,
                        help="Database type")
    parser.add_argument('--dbpath', default=defaults.db_path,
                        help="SQLite3 path, MySQL/PostgreSQL DSN or Redis URL")
    parser.add_argument('--debug-sql', action='store_true', default=defaults.debug_sql,
                        help="SQL debug mode")

    subparsers = parser.add_subparsers(dest='command', required=True)

    fetch = subparsers.add_parser('fetch', help="Fetch the data of CPE")
    fetch.add_argument('--source', default=defaults.source,
                       help="JSON file with categorized CPE entries")
    fetch.add_argument('--fetch-type', default=defaults.fetch_type.value,
                       choices=[t.value for t in FetchType], help="Source of the CPE entries")
    fetch.add_argument('--stdout', action='store_true', default=defaults.stdout,
                       help="display all CPEs to stdout")
    fetch.add_argument('--wait', type=int, default=defaults.wait,
                       help="Interval between fetch (seconds)")
    fetch.add_argument('--threads', type=int, default=defaults.threads,
                       help="The number of threads to be used")
    fetch.add_argument('--batch-size', type=int, default=defaults.batch_size,
                       help="The number of batch size to insert.")
    fetch.add_argument('--redis-timeout', type=float, default=defaults.redis_timeout,
                       help="Timeout (seconds) of the Redis connection")
    return parser


def config_from_args(args: argparse.Namespace, defaults: FetchConfig) -> FetchConfig:
    config = FetchConfig(
        db_type=args.dbtype,
        db_path=args.dbpath,
        debug_sql=args.debug_sql,
        redis_timeout=args.redis_timeout,
        lock_timeout=defaults.lock_timeout,
        fetch_type=FetchType(args.fetch_type),
        threads=args.threads,
        batch_size=args.batch_size,
        wait=args.wait,
        stdout=args.stdout,
        source=args.source,
        log_level=args.log_level,
        log_dir=args.log_dir,
    )
    config.validate()
    if not config.source:
        raise ConfigError("--source is required (or CPEDICT_SOURCE)")
    return config


def main(argv: Optional[List[str]] = None) -> int:
    try:
        defaults = FetchConfig.from_env()
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    args = build_parser(defaults).parse_args(argv)
    setup_logging(log_level=args.log_level, log_dir=args.log_dir)

    try:
        config = config_from_args(args, defaults)
        logger.debug(f"Effective configuration: {config.to_dict()}")
        job = FetchJob(config, source=lambda: load_cpes_from_file(config.source, config.fetch_type))
        FetchScheduler(job, wait=config.wait).start()
    except LockedError as e:
        logger.error(f"Database is locked, try again later: {e}")
        return EXIT_LOCKED
    except ValidationError as e:
        logger.error(f"Invalid CPE source {args.source}: {e.messages}")
        return EXIT_ERROR
    except (CpeDictError, OSError) as e:
        logger.error(f"Failed to fetch: {e}")
        return EXIT_ERROR

    return EXIT_OK
