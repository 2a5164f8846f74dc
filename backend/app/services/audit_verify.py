"""Hash-chain verification for workspace audit logs."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.models import ArchiveCheckpoint, AuditLog, VerificationCheckpoint
from app.schemas.audit import ChainOrigin, DivergenceReason, VerificationResult
from app.services.audit_hash import GENESIS_HASH, compute_record_hash

logger = logging.getLogger(__name__)


class ChainVerifier:
    """Walks a workspace chain and recomputes every hash.

    Verification is a pure read unless ``record_checkpoint`` is called. The
    walk starts at genesis, or at the latest archive checkpoint once the
    workspace has been archived, and stops at the first divergence.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def verify(
        self,
        workspace_id: int,
        limit: int | None = None,
        resume: bool = False,
    ) -> VerificationResult:
        """Verify one workspace chain.

        Args:
            workspace_id: Chain to verify.
            limit: Stop after this many records. The result then covers the
                walked prefix only.
            resume: Start after the latest verification checkpoint instead
                of walking the whole chain.

        Returns:
            VerificationResult. A divergence is reported, never raised.
        """
        origin: ChainOrigin = "genesis"
        expected = GENESIS_HASH
        after_id: int | None = None
        resumed_from: int | None = None
        last_id: int | None = None
        last_hash: str | None = None

        archive = await self._latest_archive_checkpoint(workspace_id)
        if archive is not None:
            origin = "archive_checkpoint"
            expected = archive.last_record_hash
            after_id = archive.last_record_id

        if resume:
            checkpoint = await self._latest_verification_checkpoint(workspace_id)
            if checkpoint is not None:
                anchor = await self.session.get(
                    AuditLog,
                    checkpoint.last_record_id,
                    populate_existing=True,
                )
                if anchor is None:
                    logger.info(
                        "Checkpointed record %s no longer present in workspace %s, walking full chain",
                        checkpoint.last_record_id,
                        workspace_id,
                    )
                elif anchor.record_hash != checkpoint.last_record_hash:
                    return self._diverged(
                        workspace_id,
                        origin="verification_checkpoint",
                        records_checked=1,
                        record_id=anchor.id,
                        reason="checkpoint_mismatch",
                        resumed_from=checkpoint.last_record_id,
                    )
                else:
                    origin = "verification_checkpoint"
                    expected = checkpoint.last_record_hash
                    after_id = checkpoint.last_record_id
                    resumed_from = checkpoint.last_record_id
                    last_id, last_hash = checkpoint.last_record_id, checkpoint.last_record_hash

        checked = 0
        batch_size = self.settings.audit_verify_batch_size

        while True:
            size = batch_size if limit is None else min(batch_size, limit - checked)
            if size <= 0:
                break

            query = (
                select(AuditLog)
                .where(AuditLog.workspace_id == workspace_id)
                .order_by(AuditLog.id.asc())
                .limit(size)
                .execution_options(populate_existing=True)
            )
            if after_id is not None:
                query = query.where(AuditLog.id > after_id)

            result = await self.session.execute(query)
            records = list(result.scalars().all())
            if not records:
                break

            for record in records:
                checked += 1
                if record.previous_record_hash != expected:
                    return self._diverged(
                        workspace_id,
                        origin=origin,
                        records_checked=checked,
                        record_id=record.id,
                        reason="previous_hash_mismatch",
                        resumed_from=resumed_from,
                    )
                if record.record_hash != compute_record_hash(record, expected):
                    return self._diverged(
                        workspace_id,
                        origin=origin,
                        records_checked=checked,
                        record_id=record.id,
                        reason="record_hash_mismatch",
                        resumed_from=resumed_from,
                    )
                expected = record.record_hash
                last_id, last_hash = record.id, record.record_hash

            after_id = records[-1].id
            if len(records) < size:
                break

        logger.info(
            "Audit chain for workspace %s verified: %d records from %s",
            workspace_id,
            checked,
            origin,
        )
        return VerificationResult(
            workspace_id=workspace_id,
            valid=True,
            records_checked=checked,
            chain_origin=origin,
            last_record_id=last_id,
            last_record_hash=last_hash,
            resumed_from_record_id=resumed_from,
        )

    async def record_checkpoint(
        self,
        result: VerificationResult,
        verified_by: int | None = None,
    ) -> VerificationCheckpoint | None:
        """Persist a verified prefix so later runs can resume after it.

        Nothing is written for an empty walk. The caller commits.

        Raises:
            ValueError: If the result reports a divergence.
        """
        if not result.valid:
            raise ValueError("Cannot checkpoint a chain that failed verification")
        if result.last_record_id is None or result.last_record_hash is None:
            return None

        checkpoint = VerificationCheckpoint(
            workspace_id=result.workspace_id,
            last_record_id=result.last_record_id,
            last_record_hash=result.last_record_hash,
            records_verified=result.records_checked,
            verified_by=verified_by,
        )
        self.session.add(checkpoint)
        await self.session.flush()
        return checkpoint

    def _diverged(
        self,
        workspace_id: int,
        *,
        origin: ChainOrigin,
        records_checked: int,
        record_id: int,
        reason: DivergenceReason,
        resumed_from: int | None,
    ) -> VerificationResult:
        logger.warning(
            "Audit chain divergence in workspace %s at record %s: %s",
            workspace_id,
            record_id,
            reason,
        )
        return VerificationResult(
            workspace_id=workspace_id,
            valid=False,
            records_checked=records_checked,
            chain_origin=origin,
            first_invalid_record_id=record_id,
            reason=reason,
            resumed_from_record_id=resumed_from,
        )

    async def _latest_archive_checkpoint(self, workspace_id: int) -> ArchiveCheckpoint | None:
        result = await self.session.execute(
            select(ArchiveCheckpoint)
            .where(ArchiveCheckpoint.workspace_id == workspace_id)
            .order_by(ArchiveCheckpoint.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _latest_verification_checkpoint(
        self,
        workspace_id: int,
    ) -> VerificationCheckpoint | None:
        result = await self.session.execute(
            select(VerificationCheckpoint)
            .where(VerificationCheckpoint.workspace_id == workspace_id)
            .order_by(VerificationCheckpoint.id.desc())
            .limit(1)
        )
        return result.scalars().first()
