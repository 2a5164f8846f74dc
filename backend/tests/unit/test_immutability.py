"""Tests for the storage-level append-only guard and its audited override."""

import pytest
from sqlalchemy import func, select, text

from app.core.exceptions import ImmutableRecordViolation
from app.core.immutability import guard_statements, trigger_name
from app.models import AuditLog, ImmutabilityOverride, VerificationCheckpoint
from app.services.audit import AuditService
from app.services.audit_override import immutability_override
from tests.conftest import make_event


async def append_committed(session, workspace_id, **overrides) -> AuditLog:
    record = await AuditService(session).append(make_event(workspace_id, **overrides))
    await session.commit()
    return record


async def count_records(session) -> int:
    return await session.scalar(select(func.count()).select_from(AuditLog))


class TestGuardStatements:
    """Tests for the guard DDL."""

    def test_trigger_name(self):
        """Test trigger names follow the table and operation."""
        assert trigger_name("audit_logs", "DELETE") == "audit_logs_no_delete"

    def test_sqlite_guards_update_and_delete(self):
        """Test SQLite gets an UPDATE and a DELETE trigger."""
        statements = guard_statements("sqlite", "audit_logs")

        assert len(statements) == 2
        assert any("BEFORE UPDATE ON audit_logs" in s for s in statements)
        assert any("BEFORE DELETE ON audit_logs" in s for s in statements)

    def test_postgres_also_guards_truncate(self):
        """Test PostgreSQL additionally rejects TRUNCATE."""
        statements = guard_statements("postgresql", "audit_logs")

        assert len(statements) == 3
        assert any("BEFORE TRUNCATE" in s for s in statements)


@pytest.mark.asyncio
class TestAppendOnly:
    """Tests that committed audit rows cannot change."""

    async def test_orm_update_rejected(self, test_session, workspace_a):
        """Test updating a record through the ORM is rejected."""
        record = await append_committed(test_session, workspace_a.id)

        record.action = "document.create"
        with pytest.raises(ImmutableRecordViolation) as exc_info:
            await test_session.commit()
        await test_session.rollback()

        assert exc_info.value.table == "audit_logs"
        assert exc_info.value.operation == "UPDATE"
        assert "append-only" in str(exc_info.value)

    async def test_raw_update_rejected(self, test_session, workspace_a):
        """Test raw SQL updates are rejected by the database itself."""
        await append_committed(test_session, workspace_a.id)

        with pytest.raises(ImmutableRecordViolation):
            await test_session.execute(text("UPDATE audit_logs SET action = 'document.create'"))
        await test_session.rollback()

        actions = (await test_session.execute(select(AuditLog.action))).scalars().all()
        assert actions == ["document.view"]

    async def test_raw_delete_rejected(self, test_session, workspace_a):
        """Test raw SQL deletes are rejected."""
        await append_committed(test_session, workspace_a.id)

        with pytest.raises(ImmutableRecordViolation) as exc_info:
            await test_session.execute(text("DELETE FROM audit_logs"))
        await test_session.rollback()

        assert exc_info.value.operation == "DELETE"
        assert await count_records(test_session) == 1

    async def test_checkpoint_tables_guarded(self, test_session, workspace_a):
        """Test checkpoint rows are append-only too."""
        test_session.add(
            VerificationCheckpoint(
                workspace_id=workspace_a.id,
                last_record_id=1,
                last_record_hash="a" * 64,
                records_verified=1,
            )
        )
        await test_session.commit()

        with pytest.raises(ImmutableRecordViolation) as exc_info:
            await test_session.execute(text("DELETE FROM audit_verification_checkpoints"))
        await test_session.rollback()

        assert exc_info.value.table == "audit_verification_checkpoints"

    async def test_inserts_still_allowed(self, test_session, workspace_a):
        """Test the guard only blocks modification."""
        await append_committed(test_session, workspace_a.id)
        await append_committed(test_session, workspace_a.id)

        assert await count_records(test_session) == 2


@pytest.mark.asyncio
class TestImmutabilityOverride:
    """Tests for the audited bypass."""

    async def test_override_allows_delete_and_is_recorded(self, test_session, workspace_a):
        """Test an override permits the operation and leaves a record."""
        await append_committed(test_session, workspace_a.id)

        async with immutability_override(
            test_session,
            table="audit_logs",
            operation="DELETE",
            reason="Retention test",
            operator="ops@example.com",
        ) as override:
            await test_session.execute(text("DELETE FROM audit_logs"))
        await test_session.commit()

        assert override.id is not None
        assert await count_records(test_session) == 0

        overrides = (await test_session.execute(select(ImmutabilityOverride))).scalars().all()
        assert [(o.table_name, o.operation, o.operator) for o in overrides] == [
            ("audit_logs", "DELETE", "ops@example.com")
        ]

    async def test_guard_restored_after_override(self, test_session, workspace_a):
        """Test the guard is back in force once the block exits."""
        await append_committed(test_session, workspace_a.id)
        await append_committed(test_session, workspace_a.id)

        async with immutability_override(
            test_session,
            table="audit_logs",
            operation="DELETE",
            reason="Remove one record",
            operator="ops",
        ):
            await test_session.execute(text("DELETE FROM audit_logs WHERE id = 1"))
        await test_session.commit()

        with pytest.raises(ImmutableRecordViolation):
            await test_session.execute(text("DELETE FROM audit_logs"))
        await test_session.rollback()

        assert await count_records(test_session) == 1

    async def test_override_only_opens_named_operation(self, test_session, workspace_a):
        """Test a DELETE override does not permit UPDATE."""
        await append_committed(test_session, workspace_a.id)

        with pytest.raises(ImmutableRecordViolation):
            async with immutability_override(
                test_session,
                table="audit_logs",
                operation="DELETE",
                reason="Wrong operation",
                operator="ops",
            ):
                await test_session.execute(text("UPDATE audit_logs SET action = 'x.y'"))
        await test_session.rollback()

    async def test_rollback_restores_guard_and_discards_record(self, test_session, workspace_a):
        """Test a failed override leaves no trace and no open guard."""
        await append_committed(test_session, workspace_a.id)

        with pytest.raises(RuntimeError):
            async with immutability_override(
                test_session,
                table="audit_logs",
                operation="DELETE",
                reason="Aborted",
                operator="ops",
            ):
                await test_session.execute(text("DELETE FROM audit_logs"))
                raise RuntimeError("abort")
        await test_session.rollback()

        assert await count_records(test_session) == 1
        overrides = await test_session.scalar(select(func.count()).select_from(ImmutabilityOverride))
        assert overrides == 0

        with pytest.raises(ImmutableRecordViolation):
            await test_session.execute(text("DELETE FROM audit_logs"))
        await test_session.rollback()

    async def test_guard_restored_when_block_raises_and_caller_commits(self, test_session, workspace_a):
        """Test an exception inside the block cannot leave the guard disabled."""
        await append_committed(test_session, workspace_a.id)
        await append_committed(test_session, workspace_a.id)

        with pytest.raises(RuntimeError):
            async with immutability_override(
                test_session,
                table="audit_logs",
                operation="DELETE",
                reason="Interrupted cleanup",
                operator="ops",
            ):
                raise RuntimeError("interrupted")
        await test_session.commit()

        triggers = await test_session.scalars(
            text("SELECT name FROM sqlite_master WHERE type = 'trigger' AND name = 'audit_logs_no_delete'")
        )
        assert list(triggers) == ["audit_logs_no_delete"]

        with pytest.raises(ImmutableRecordViolation):
            await test_session.execute(text("DELETE FROM audit_logs"))
        await test_session.rollback()

        assert await count_records(test_session) == 2

    async def test_reason_required(self, test_session):
        """Test an override without a reason is refused."""
        with pytest.raises(ValueError, match="reason"):
            async with immutability_override(
                test_session,
                table="audit_logs",
                operation="DELETE",
                reason="  ",
                operator="ops",
            ):
                pass

    async def test_only_append_only_tables(self, test_session):
        """Test ordinary tables cannot be targeted."""
        with pytest.raises(ValueError, match="not append-only"):
            async with immutability_override(
                test_session,
                table="documents",
                operation="DELETE",
                reason="Nope",
                operator="ops",
            ):
                pass
        await test_session.rollback()
