#!/usr/bin/env python3
"""pvcm - migrate an automation controller backup volume between clusters."""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from pvcm_common.errors import AuthError, ConfigError, MigrationError
from pvcm.inputs import load_credentials, load_mapping, open_session, resolve_credentials_path
from pvcm.migration import run_migration
from pvcm.utils import create_run_dir, run_timestamp, setup_logging
from pvcm.workloads import DEFAULT_IMAGE

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_AUTH = 3
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143  # 128 + 15 (SIGTERM)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser.

    The mapping file can be given as ``--pvc`` or as the only positional.
    """
    parser = argparse.ArgumentParser(
        prog='pvcm',
        description='Back up, copy and restore an automation controller PVC between two clusters',
        allow_abbrev=False
    )
    parser.add_argument(
        'mapping',
        nargs='?',
        help='Mapping CSV (same as --pvc)'
    )
    parser.add_argument(
        '--pvc',
        dest='pvc',
        help='Mapping CSV with source/destination namespaces and PVCs'
    )
    parser.add_argument(
        '--cred',
        help='Credentials CSV (default: $PVCM_CREDENTIALS or cluster-creds.csv next to the mapping)'
    )
    parser.add_argument(
        '--image',
        default=os.getenv('PVCM_IMAGE', DEFAULT_IMAGE),
        help=f'Image for the transfer pods (default: $PVCM_IMAGE or {DEFAULT_IMAGE})'
    )
    parser.add_argument(
        '--workdir',
        default='.',
        help='Directory that receives the run directory (default: current directory)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Debug logging'
    )
    return parser


def _fail(phase: str, message: str, code: int) -> int:
    print(f"❌ [{phase}] {message}", file=sys.stderr, flush=True)
    logger.error(f"[{phase}] {message}")
    return code


def run(args: argparse.Namespace) -> int:
    """Execute one migration and return the process exit code."""
    mapping_path = Path(args.pvc or args.mapping)
    try:
        request = load_mapping(mapping_path)
    except ConfigError as e:
        return _fail(e.phase, str(e), EXIT_USAGE)

    ts = run_timestamp()
    run_dir = create_run_dir(Path(args.workdir), ts)
    log_path = setup_logging(run_dir, ts, verbose=args.verbose)
    logger.info(f"Run directory: {run_dir}")
    logger.info(f"Master log: {log_path}")
    logger.info(
        f"Plan: {request.source_namespace} → {request.destination_namespace}, "
        f"dest PVC '{request.destination_volume_name}', method {request.method}"
    )

    try:
        creds_path = resolve_credentials_path(args.cred, mapping_path)
        creds = load_credentials(creds_path) if creds_path else {}
    except ConfigError as e:
        return _fail(e.phase, str(e), EXIT_USAGE)

    sessions = []
    try:
        source = open_session(creds.get('source'), 'source', run_dir, ts)
        sessions.append(source)
        destination = open_session(creds.get('destination'), 'destination', run_dir, ts)
        sessions.append(destination)

        run_migration(request, source, destination, run_dir, ts, image=args.image)
    except AuthError as e:
        return _fail(e.phase, str(e), EXIT_AUTH)
    except ConfigError as e:
        return _fail(e.phase, str(e), EXIT_USAGE)
    except MigrationError as e:
        return _fail(e.phase, str(e), EXIT_FAILED)
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        return _fail('migration', f"Unexpected error: {e}", EXIT_FAILED)
    finally:
        for session in sessions:
            session.close()

    logger.info("🎉 Migration completed successfully.")
    logger.info(f"Logs: {run_dir}")
    return EXIT_OK


def main() -> None:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.pvc and args.mapping and args.pvc != args.mapping:
        parser.error('give the mapping file either as --pvc or as positional, not both')
    mapping = args.pvc or args.mapping
    if not mapping:
        parser.error('a mapping file is required (--pvc <file>)')
    if not Path(mapping).is_file() or not os.access(mapping, os.R_OK):
        parser.error(f"mapping file '{mapping}' not found or not readable")

    def handle_signal(signum, frame):
        """Turn termination into SystemExit so cleanup runs while unwinding."""
        print("\nStopping, cleaning up transfer pods...", file=sys.stderr, flush=True)
        sys.exit(EXIT_TERMINATED)

    old_sigterm = signal.signal(signal.SIGTERM, handle_signal)
    old_sighup = signal.signal(signal.SIGHUP, handle_signal)
    try:
        code = run(args)
    except KeyboardInterrupt:
        code = _fail('interrupted', 'Interrupted by user', EXIT_INTERRUPTED)
    finally:
        signal.signal(signal.SIGTERM, old_sigterm)
        signal.signal(signal.SIGHUP, old_sighup)

    sys.exit(code)


if __name__ == '__main__':
    main()
