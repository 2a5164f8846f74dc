"""Tests for hash-chain verification and tamper detection."""

import json

import pytest
from sqlalchemy import select, text

from app.core.config import Settings
from app.models import VerificationCheckpoint
from app.services.audit import AuditService
from app.services.audit_override import immutability_override
from app.services.audit_verify import ChainVerifier
from tests.conftest import make_event


async def build_chain(session, workspace_id, count, **overrides) -> list:
    service = AuditService(session)
    records = []
    for index in range(count):
        records.append(
            await service.append(
                make_event(workspace_id, resource_id=str(index), metadata={"n": index}, **overrides)
            )
        )
    await session.commit()
    return records


async def tamper(session, statement: str, **params) -> None:
    """Modify audit data the only way possible: through an override."""
    operation = statement.split()[0].upper()
    async with immutability_override(
        session,
        table="audit_logs",
        operation=operation,
        reason="Tamper simulation",
        operator="test",
    ):
        await session.execute(text(statement), params)
    await session.commit()


@pytest.mark.asyncio
class TestVerifyValidChains:
    """Tests for chains that verify."""

    async def test_empty_chain_is_valid(self, test_session, workspace_a):
        """Test a workspace without records verifies with zero records."""
        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is True
        assert result.records_checked == 0
        assert result.chain_origin == "genesis"
        assert result.first_invalid_record_id is None

    async def test_intact_chain_is_valid(self, test_session, workspace_a):
        """Test an untouched chain verifies in full."""
        records = await build_chain(test_session, workspace_a.id, 5)

        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is True
        assert result.records_checked == 5
        assert result.last_record_id == records[-1].id
        assert result.last_record_hash == records[-1].record_hash

    async def test_batches_cover_whole_chain(self, test_session, workspace_a):
        """Test keyset batching walks every record."""
        await build_chain(test_session, workspace_a.id, 7)

        verifier = ChainVerifier(test_session, Settings(audit_verify_batch_size=2))
        result = await verifier.verify(workspace_a.id)

        assert result.valid is True
        assert result.records_checked == 7

    async def test_limit_verifies_prefix(self, test_session, workspace_a):
        """Test a limit stops the walk early."""
        records = await build_chain(test_session, workspace_a.id, 5)

        result = await ChainVerifier(test_session).verify(workspace_a.id, limit=3)

        assert result.valid is True
        assert result.records_checked == 3
        assert result.last_record_id == records[2].id

    async def test_other_workspace_tampering_ignored(self, test_session, workspace_a, workspace_b):
        """Test verification only looks at its own workspace."""
        await build_chain(test_session, workspace_a.id, 2)
        records_b = await build_chain(test_session, workspace_b.id, 2)
        await tamper(
            test_session,
            "UPDATE audit_logs SET action = 'document.create' WHERE id = :id",
            id=records_b[0].id,
        )

        result = await ChainVerifier(test_session).verify(workspace_a.id)
        assert result.valid is True
        assert result.records_checked == 2


@pytest.mark.asyncio
class TestTamperDetection:
    """Tests that any modification is detected at the right record."""

    @pytest.mark.parametrize(
        "assignment,params",
        [
            ("action = :value", {"value": "document.create"}),
            ("actor_user_id = :value", {"value": 999}),
            ("resource_type = :value", {"value": "folder"}),
            ("resource_id = :value", {"value": "tampered"}),
            ("metadata = :value", {"value": json.dumps({"n": 99})}),
            ("created_at = :value", {"value": "2020-01-01 00:00:00.000000"}),
        ],
    )
    async def test_field_tamper_detected(self, test_session, workspace_a, assignment, params):
        """Test changing a hashed field breaks that record's hash."""
        records = await build_chain(test_session, workspace_a.id, 5)
        target = records[2]

        await tamper(
            test_session,
            f"UPDATE audit_logs SET {assignment} WHERE id = :id",
            id=target.id,
            **params,
        )

        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is False
        assert result.first_invalid_record_id == target.id
        assert result.reason == "record_hash_mismatch"
        assert result.records_checked == 3

    async def test_recomputed_hash_detected_at_successor(self, test_session, workspace_a):
        """Test rewriting a record and its hash breaks the next link."""
        records = await build_chain(test_session, workspace_a.id, 4)

        await tamper(
            test_session,
            "UPDATE audit_logs SET record_hash = :value WHERE id = :id",
            value="f" * 64,
            id=records[1].id,
        )

        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is False
        assert result.first_invalid_record_id == records[1].id
        assert result.reason == "record_hash_mismatch"

    async def test_previous_hash_tamper_detected(self, test_session, workspace_a):
        """Test a rewritten link is reported as a link mismatch."""
        records = await build_chain(test_session, workspace_a.id, 3)

        await tamper(
            test_session,
            "UPDATE audit_logs SET previous_record_hash = :value WHERE id = :id",
            value="0" * 64,
            id=records[1].id,
        )

        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is False
        assert result.first_invalid_record_id == records[1].id
        assert result.reason == "previous_hash_mismatch"

    async def test_deletion_detected_at_next_record(self, test_session, workspace_a):
        """Test deleting a record breaks the link of the record after it."""
        records = await build_chain(test_session, workspace_a.id, 5)

        await tamper(test_session, "DELETE FROM audit_logs WHERE id = :id", id=records[2].id)

        result = await ChainVerifier(test_session).verify(workspace_a.id)

        assert result.valid is False
        assert result.first_invalid_record_id == records[3].id
        assert result.reason == "previous_hash_mismatch"
        assert result.records_checked == 3

    async def test_verification_is_read_only(self, test_session, workspace_a):
        """Test verifying never writes a checkpoint on its own."""
        await build_chain(test_session, workspace_a.id, 2)

        await ChainVerifier(test_session).verify(workspace_a.id)

        checkpoints = (await test_session.execute(select(VerificationCheckpoint))).scalars().all()
        assert checkpoints == []


@pytest.mark.asyncio
class TestResume:
    """Tests for resuming from a verification checkpoint."""

    async def test_resume_walks_only_new_records(self, test_session, workspace_a):
        """Test a resumed walk starts after the checkpointed record."""
        first = await build_chain(test_session, workspace_a.id, 3)
        verifier = ChainVerifier(test_session)
        result = await verifier.verify(workspace_a.id)
        await verifier.record_checkpoint(result, verified_by=None)
        await test_session.commit()

        second = await build_chain(test_session, workspace_a.id, 2)
        resumed = await verifier.verify(workspace_a.id, resume=True)

        assert resumed.valid is True
        assert resumed.chain_origin == "verification_checkpoint"
        assert resumed.resumed_from_record_id == first[-1].id
        assert resumed.records_checked == 2
        assert resumed.last_record_id == second[-1].id

    async def test_resume_without_checkpoint_walks_everything(self, test_session, workspace_a):
        """Test resume falls back to a full walk when nothing is checkpointed."""
        await build_chain(test_session, workspace_a.id, 3)

        result = await ChainVerifier(test_session).verify(workspace_a.id, resume=True)

        assert result.chain_origin == "genesis"
        assert result.records_checked == 3

    async def test_tampered_checkpoint_anchor_detected(self, test_session, workspace_a):
        """Test a checkpointed record whose hash changed is reported."""
        records = await build_chain(test_session, workspace_a.id, 3)
        verifier = ChainVerifier(test_session)
        await verifier.record_checkpoint(await verifier.verify(workspace_a.id))
        await test_session.commit()

        await tamper(
            test_session,
            "UPDATE audit_logs SET record_hash = :value WHERE id = :id",
            value="e" * 64,
            id=records[-1].id,
        )

        result = await verifier.verify(workspace_a.id, resume=True)

        assert result.valid is False
        assert result.reason == "checkpoint_mismatch"
        assert result.first_invalid_record_id == records[-1].id

    async def test_full_walk_still_possible_after_checkpoint(self, test_session, workspace_a):
        """Test a checkpoint never hides tampering from a full walk."""
        records = await build_chain(test_session, workspace_a.id, 3)
        verifier = ChainVerifier(test_session)
        await verifier.record_checkpoint(await verifier.verify(workspace_a.id))
        await test_session.commit()

        await tamper(
            test_session,
            "UPDATE audit_logs SET action = 'document.create' WHERE id = :id",
            id=records[0].id,
        )

        assert (await verifier.verify(workspace_a.id, resume=True)).valid is True
        full = await verifier.verify(workspace_a.id)
        assert full.valid is False
        assert full.first_invalid_record_id == records[0].id

    async def test_divergent_result_cannot_be_checkpointed(self, test_session, workspace_a):
        """Test checkpoints are only written for clean results."""
        records = await build_chain(test_session, workspace_a.id, 2)
        await tamper(test_session, "DELETE FROM audit_logs WHERE id = :id", id=records[0].id)

        verifier = ChainVerifier(test_session)
        result = await verifier.verify(workspace_a.id)

        with pytest.raises(ValueError):
            await verifier.record_checkpoint(result)

    async def test_empty_result_writes_no_checkpoint(self, test_session, workspace_a):
        """Test nothing is recorded for an empty chain."""
        verifier = ChainVerifier(test_session)
        assert await verifier.record_checkpoint(await verifier.verify(workspace_a.id)) is None
