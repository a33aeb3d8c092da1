#!/usr/bin/env python3
"""
dupelink - incremental duplicate file indexer and hardlinker
License: MIT
"""

import argparse
import logging
import os
import sqlite3
import sys
from pathlib import Path
import colorlog

from constants import APP_VERSION as __version__, DEFAULT_DB_PATH

logger = logging.getLogger('dupelink')

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(verbosity=0, quiet=False, log_file=None):
    """Setup logging with color support and verbosity levels"""
    if quiet:
        level = logging.ERROR
    elif verbosity == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace handlers from an earlier call in the same process
    for handler in list(root_logger.handlers):
        if getattr(handler, 'dupelink_handler', False):
            root_logger.removeHandler(handler)
            handler.close()

    # Console handler with color; stdout is reserved for command output
    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            '%(log_color)s' + LOG_FORMAT,
            datefmt='%Y-%m-%d %H:%M:%S',
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )
    )
    console_handler.dupelink_handler = True
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.dupelink_handler = True
        root_logger.addHandler(file_handler)

        logging.getLogger('dupelink').info(f"Logging to file: {log_file}")

    return logging.getLogger('dupelink')


def _add_selector_arguments(parser, by_required=False):
    """Options shared by dupe and link"""
    parser.add_argument('--by', choices=['content', 'audio'],
                        required=by_required, default=None if by_required else 'content',
                        help='Fingerprint used to group duplicates'
                             + ('' if by_required else ' (default: content)'))
    parser.add_argument('-m', '--min-count', type=int, default=2,
                        help='Minimum number of files in a group (default: 2)')
    parser.add_argument('--scope', metavar='PATH',
                        help='Only report group members in this directory')
    parser.add_argument('--scope-recurse', action='store_true',
                        help='Include subdirectories of --scope')
    parser.add_argument('-e', '--extensions', metavar='EXTS',
                        help='Comma-separated extensions to include, e.g. mp3,flac')


def create_parser():
    """Create argument parser with one sub-command per operation"""
    parser = argparse.ArgumentParser(
        prog='dupelink',
        description='Index files by fingerprint and collapse duplicates into hardlinks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dupelink scan ~/Music -r -H                        # Index and hash a tree
  dupelink scan ~/Music -r -a -e mp3,flac,m4a        # Add audio fingerprints
  dupelink dupe --by content                         # List duplicate groups
  dupelink link --by content --policy oldest --dry-run
  dupelink status
        """
    )

    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress non-error output')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    parser.add_argument('--log-file', type=str,
                        help='Also log to this file (rotated at 10MB)')
    parser.add_argument('--db', dest='db_path', default=DEFAULT_DB_PATH,
                        help=f'Index database path (default: {DEFAULT_DB_PATH})')
    parser.add_argument('--config', dest='config_path',
                        help='Config file (default: dupelink.toml beside the database)')

    # Hidden debug flag
    parser.add_argument('--debug-sql', action='store_true',
                        help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    scan = subparsers.add_parser('scan', help='Index a directory')
    scan.add_argument('path', nargs='?', default='.',
                      help='Directory to scan (default: current directory)')
    scan.add_argument('-e', '--extensions', metavar='EXTS',
                      help='Comma-separated extensions to index (default: from config, else all)')
    scan.add_argument('-r', '--recurse', action='store_true',
                      help='Descend into subdirectories')
    scan.add_argument('-H', '--hash', dest='hash_content', action='store_true',
                      help='Compute content fingerprints')
    scan.add_argument('-a', '--audio', dest='hash_audio', action='store_true',
                      help='Compute audio stream fingerprints (needs ffmpeg)')
    scan.add_argument('-f', '--force', action='store_true',
                      help='Rewrite entries even if unchanged')

    dupe = subparsers.add_parser('dupe', help='List duplicate groups')
    _add_selector_arguments(dupe)

    link = subparsers.add_parser('link', help='Replace duplicates with hardlinks')
    _add_selector_arguments(link, by_required=True)
    link.add_argument('--policy', required=True,
                      choices=['shallowest', 'deepest', 'complete', 'oldest', 'newest'],
                      help='Which member of a group to keep')
    link.add_argument('-n', '--dry-run', action='store_true',
                      help='Show what would be linked without changing anything')

    subparsers.add_parser('status', help='Show index statistics')

    return parser


def validate_args(args, logger):
    """Check argument combinations argparse cannot express"""
    if args.command == 'scan':
        if not os.path.isdir(args.path):
            logger.error(f"Not a directory: {args.path}")
            return False
    elif args.command in ('dupe', 'link'):
        if args.min_count < 2:
            logger.error(f"Minimum group size must be at least 2, got {args.min_count}")
            return False
        if args.scope_recurse and not args.scope:
            logger.error("--scope-recurse requires --scope")
            return False
    return True


def run_scan(args, db, config, oracle):
    from records import parse_extensions
    from scanner import DirectoryScanner

    extensions = parse_extensions(args.extensions if args.extensions is not None
                                  else config.get('default_extensions', ''))
    scanner = DirectoryScanner(db, oracle, batch_size=int(config['batch_size']))
    result = scanner.scan(args.path,
                          extensions=extensions,
                          recurse=args.recurse,
                          hash_content=args.hash_content,
                          hash_audio=args.hash_audio,
                          force=args.force)
    if result.failed:
        logger.warning(f"{result.failed} entries could not be indexed")
    return 0


def _make_grouper(args, db):
    from grouping import DuplicateGrouper, PathScope
    from records import parse_extensions

    scope = PathScope(args.scope, recurse=args.scope_recurse) if args.scope else None
    return DuplicateGrouper(db,
                            kind=args.by,
                            min_count=args.min_count,
                            scope=scope,
                            extensions=parse_extensions(args.extensions))


def run_dupe(args, db):
    grouper = _make_grouper(args, db)
    for count, group in enumerate(grouper.iter_groups()):
        if count:
            print()
        for path in group.paths:
            print(path)
    return 0


def run_link(args, db):
    from linker import Linker

    grouper = _make_grouper(args, db)
    linker = Linker(db, args.policy, by=args.by, dry_run=args.dry_run)
    # Rows are updated while linking, so finish reading the index first
    groups = list(grouper.iter_groups())
    for count, group in enumerate(groups):
        if count:
            print()
        for outcome, path in linker.link_group(group):
            print(f"[{outcome.value}] {path}")
        sys.stdout.flush()
    return 0


def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    logger = setup_logging(args.verbose, args.quiet, args.log_file)
    logger.debug(f"dupelink v{__version__}, command line args: {argv if argv is not None else sys.argv[1:]}")

    if not validate_args(args, logger):
        return 2

    from config import default_config_path, load_config
    from database import IndexDatabase, IndexDatabaseError
    from hashing import HashOracle, ToolMissingError
    import metrics

    if args.command == 'status' and not os.path.exists(args.db_path):
        print(f"No dupelink database found at {args.db_path}")
        print("Run 'dupelink scan' first.")
        return 1

    config_path = args.config_path or default_config_path(args.db_path)
    config = load_config(config_path)

    oracle = None
    if args.command == 'scan':
        oracle = HashOracle.from_config(config)
        if args.hash_audio:
            try:
                oracle.ensure_audio_tools()
            except ToolMissingError as e:
                logger.error(str(e))
                logger.error("Install ffmpeg or set ffprobe_path/ffmpeg_path in the config")
                return 2

    db = IndexDatabase(args.db_path, debug_sql=args.debug_sql)
    try:
        db.connect()
    except IndexDatabaseError as e:
        logger.error(f"Cannot open index database: {e}")
        return 1

    try:
        if args.command == 'scan':
            return run_scan(args, db, config, oracle)
        if args.command == 'dupe':
            return run_dupe(args, db)
        if args.command == 'link':
            return run_link(args, db)

        from status import StatusReport
        StatusReport(db, config).display()
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except (IndexDatabaseError, sqlite3.Error) as e:
        logger.error(f"Index database error: {e}")
        return 1
    finally:
        metrics.get_metrics().log_metrics_summary()
        db.close()


if __name__ == '__main__':
    sys.exit(main())
