"""Retention archival for workspace audit chains.

Moves the oldest part of a chain out of the database into a JSONL archive
file and leaves an archive checkpoint behind, so the remaining records still
verify: the first surviving record links to the checkpoint hash instead of
genesis.
"""

import calendar
import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import to_naive_utc, utc_now
from app.core.exceptions import ArchiveRefused
from app.models import ArchiveCheckpoint, AuditAction, AuditLog
from app.schemas.audit import ArchiveResult, AuditEvent
from app.services.audit import AuditService
from app.services.audit_hash import canonical_json, digest, format_timestamp
from app.services.audit_override import immutability_override
from app.services.audit_verify import ChainVerifier

logger = logging.getLogger(__name__)


def retention_cutoff(months: int, now: datetime | None = None) -> datetime:
    """The instant ``months`` calendar months before ``now``."""
    now = now or utc_now()
    month_index = now.year * 12 + now.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def archive_line(record: AuditLog) -> str:
    """One JSONL line holding every stored field of a record."""
    return canonical_json(
        {
            "id": record.id,
            "workspace_id": record.workspace_id,
            "actor_user_id": record.actor_user_id,
            "action": record.action,
            "resource_type": record.resource_type,
            "resource_id": record.resource_id,
            "metadata": record.details,
            "created_at": format_timestamp(record.created_at),
            "previous_record_hash": record.previous_record_hash,
            "record_hash": record.record_hash,
        }
    )


class AuditArchiver:
    """Archives chain prefixes older than a cutoff.

    Must run on the owner credential: deleting archived records goes through
    ``immutability_override``.
    """

    def __init__(self, session: AsyncSession, archive_dir: str | Path):
        self.session = session
        self.archive_dir = Path(archive_dir)

    async def archive(
        self,
        workspace_id: int,
        before: datetime,
        operator: str,
        operator_user_id: int | None = None,
        dry_run: bool = False,
    ) -> ArchiveResult:
        """Archive every record of ``workspace_id`` created before ``before``.

        Args:
            workspace_id: Chain to archive.
            before: Cutoff; records created strictly earlier are archived.
            operator: Who runs the archival. Recorded with the override.
            operator_user_id: Operator's user id, when known.
            dry_run: Report what would be archived without changing anything.

        Raises:
            ArchiveRefused: If the chain does not verify.
        """
        before = to_naive_utc(before)
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.workspace_id == workspace_id, AuditLog.created_at < before)
            .order_by(AuditLog.id.asc())
        )
        records = list(result.scalars().all())

        if not records:
            logger.info("Nothing to archive for workspace %s before %s", workspace_id, before)
            return ArchiveResult(workspace_id=workspace_id, records_archived=0, dry_run=dry_run)

        verification = await ChainVerifier(self.session).verify(workspace_id)
        if not verification.valid:
            raise ArchiveRefused(
                f"Workspace {workspace_id} chain diverges at record "
                f"{verification.first_invalid_record_id} ({verification.reason}); not archiving"
            )

        last = records[-1]
        if dry_run:
            logger.info(
                "[dry run] Would archive %d records of workspace %s up to record %s",
                len(records),
                workspace_id,
                last.id,
            )
            return ArchiveResult(
                workspace_id=workspace_id,
                records_archived=len(records),
                dry_run=True,
                last_record_id=last.id,
                last_record_hash=last.record_hash,
            )

        # Logged before the deletion so the chain tail always survives
        await AuditService(self.session).append(
            AuditEvent(
                workspace_id=workspace_id,
                actor_user_id=operator_user_id,
                action=AuditAction.AUDIT_RECORDS_ARCHIVED,
                resource_type="audit_log",
                resource_id=str(workspace_id),
                metadata={
                    "records_archived": len(records),
                    "first_record_id": records[0].id,
                    "last_record_id": last.id,
                    "before": format_timestamp(before),
                    "operator": operator,
                },
            )
        )

        path, checksum = self._write_archive(workspace_id, records)
        try:
            self.session.add(
                ArchiveCheckpoint(
                    workspace_id=workspace_id,
                    last_record_id=last.id,
                    last_record_hash=last.record_hash,
                    last_record_created_at=last.created_at,
                    records_archived=len(records),
                    archive_location=str(path),
                    archive_checksum=checksum,
                    operator=operator,
                    created_by=operator_user_id,
                )
            )
            await self.session.flush()

            async with immutability_override(
                self.session,
                table="audit_logs",
                operation="DELETE",
                reason=f"Retention archival of {len(records)} records before {format_timestamp(before)}",
                operator=operator,
            ):
                await self.session.execute(
                    delete(AuditLog)
                    .where(AuditLog.workspace_id == workspace_id, AuditLog.id <= last.id)
                    .execution_options(synchronize_session=False)
                )

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            path.unlink(missing_ok=True)
            path.with_suffix(".sha256").unlink(missing_ok=True)
            raise

        logger.info(
            "Archived %d records of workspace %s to %s (sha256 %s)",
            len(records),
            workspace_id,
            path,
            checksum,
        )
        return ArchiveResult(
            workspace_id=workspace_id,
            records_archived=len(records),
            last_record_id=last.id,
            last_record_hash=last.record_hash,
            archive_location=str(path),
            archive_checksum=checksum,
        )

    def _write_archive(self, workspace_id: int, records: list[AuditLog]) -> tuple[Path, str]:
        """Write records as JSONL with a sidecar checksum file."""
        directory = self.archive_dir / f"workspace-{workspace_id}"
        directory.mkdir(parents=True, exist_ok=True)

        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        path = directory / f"{stamp}-{records[0].id}-{records[-1].id}.jsonl"

        content = "".join(archive_line(record) + "\n" for record in records).encode("utf-8")
        checksum = digest(content)

        path.write_bytes(content)
        path.with_suffix(".sha256").write_text(f"{checksum}  {path.name}\n", encoding="utf-8")
        return path, checksum
