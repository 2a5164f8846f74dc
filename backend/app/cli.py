"""Operator command line for the audit log.

Usage:
  ship-audit verify --workspace-id 1 [--limit N] [--resume] [--checkpoint]
  ship-audit archive --workspace-id 1 --operator alice [--months 12] [--dry-run]

Exit codes:
  0 = Chain is valid / archival done
  1 = Configuration error
  2 = Chain verification failed, or archival refused because of it
"""

import argparse
import asyncio
import logging
import sys

from app.core.config import get_settings
from app.core.database import build_engine, build_session_maker
from app.core.exceptions import ArchiveRefused
from app.services.audit_archive import AuditArchiver, retention_cutoff
from app.services.audit_verify import ChainVerifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_CHAIN_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ship-audit", description=__doc__.splitlines()[0])
    parser.add_argument("--database-url", help="Override the configured database URL")
    subcommands = parser.add_subparsers(dest="command", required=True)

    verify = subcommands.add_parser("verify", help="Verify a workspace hash chain")
    verify.add_argument("--workspace-id", type=int, required=True)
    verify.add_argument("--limit", type=int, default=None)
    verify.add_argument("--resume", action="store_true", help="Start after the latest checkpoint")
    verify.add_argument("--checkpoint", action="store_true", help="Record a clean result")
    verify.set_defaults(handler=run_verify)

    archive = subcommands.add_parser("archive", help="Archive records past retention")
    archive.add_argument("--workspace-id", type=int, required=True)
    archive.add_argument("--operator", required=True)
    archive.add_argument("--months", type=int, default=None)
    archive.add_argument("--archive-dir", default=None)
    archive.add_argument("--dry-run", action="store_true")
    archive.set_defaults(handler=run_archive)

    return parser


async def run_verify(args: argparse.Namespace) -> int:
    """Verify one chain and print the result as JSON."""
    settings = get_settings()
    engine = build_engine(args.database_url or settings.database_url)
    session_maker = build_session_maker(engine)
    try:
        async with session_maker() as session:
            verifier = ChainVerifier(session)
            result = await verifier.verify(args.workspace_id, limit=args.limit, resume=args.resume)
            if args.checkpoint and result.valid:
                await verifier.record_checkpoint(result)
                await session.commit()
    finally:
        await engine.dispose()

    print(result.model_dump_json(indent=2, exclude_none=True))
    return EXIT_OK if result.valid else EXIT_CHAIN_INVALID


async def run_archive(args: argparse.Namespace) -> int:
    """Archive one chain's records older than the retention window."""
    settings = get_settings()
    url = args.database_url or settings.admin_database_url or settings.database_url
    months = args.months if args.months is not None else settings.audit_retention_months
    if months < 0:
        print("--months must not be negative", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    engine = build_engine(url)
    session_maker = build_session_maker(engine)
    try:
        async with session_maker() as session:
            archiver = AuditArchiver(session, args.archive_dir or settings.audit_archive_dir)
            result = await archiver.archive(
                args.workspace_id,
                before=retention_cutoff(months),
                operator=args.operator,
                dry_run=args.dry_run,
            )
    except ArchiveRefused as exc:
        print(f"Archive refused: {exc}", file=sys.stderr)
        return EXIT_CHAIN_INVALID
    finally:
        await engine.dispose()

    print(result.model_dump_json(indent=2, exclude_none=True))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    sys.exit(main())
