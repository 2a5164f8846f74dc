"""Storage-level append-only guard for the audit tables.

Every append-only table carries BEFORE UPDATE / BEFORE DELETE triggers that
abort the statement with ``<table> is append-only: <OP> rejected``. The guard
lives in the database, so it holds for any connection using the application
credential, including raw SQL. An engine-level error hook turns the database
error into ``ImmutableRecordViolation``.
"""

import logging
import re

from sqlalchemy import DDL, MetaData, event
from sqlalchemy.engine import ExceptionContext
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.core.exceptions import ImmutableRecordViolation

logger = logging.getLogger(__name__)

APPEND_ONLY_TABLES = (
    "audit_logs",
    "audit_archive_checkpoints",
    "audit_verification_checkpoints",
    "audit_overrides",
)
GUARDED_OPERATIONS = ("UPDATE", "DELETE")

_VIOLATION_PATTERN = re.compile(r"(\w+) is append-only: (\w+) rejected")

POSTGRES_GUARD_FUNCTION = """
CREATE OR REPLACE FUNCTION audit_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION USING
        MESSAGE = TG_TABLE_NAME || ' is append-only: ' || TG_OP || ' rejected',
        ERRCODE = 'restrict_violation';
END;
$$ LANGUAGE plpgsql
"""


def trigger_name(table: str, operation: str) -> str:
    """Name of the trigger guarding ``operation`` on ``table``."""
    return f"{table}_no_{operation.lower()}"


def _check_target(table: str, operation: str) -> None:
    if table not in APPEND_ONLY_TABLES:
        raise ValueError(f"Table '{table}' is not append-only")
    if operation not in GUARDED_OPERATIONS:
        raise ValueError(f"Operation '{operation}' is not guarded")


def sqlite_trigger_ddl(table: str, operation: str) -> str:
    """SQLite trigger that aborts ``operation`` on ``table``."""
    return (
        f"CREATE TRIGGER IF NOT EXISTS {trigger_name(table, operation)} "
        f"BEFORE {operation} ON {table} "
        f"BEGIN SELECT RAISE(ABORT, '{table} is append-only: {operation} rejected'); END"
    )


def guard_statements(dialect_name: str, table: str) -> list[str]:
    """DDL statements installing the append-only guard for one table.

    PostgreSQL statements assume ``POSTGRES_GUARD_FUNCTION`` already exists.
    Unsupported dialects get no statements.
    """
    if dialect_name == "postgresql":
        statements = [
            f"CREATE TRIGGER {trigger_name(table, op)} BEFORE {op} ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION audit_reject_mutation()"
            for op in GUARDED_OPERATIONS
        ]
        statements.append(
            f"CREATE TRIGGER {trigger_name(table, 'TRUNCATE')} BEFORE TRUNCATE ON {table} "
            f"FOR EACH STATEMENT EXECUTE FUNCTION audit_reject_mutation()"
        )
        return statements
    if dialect_name == "sqlite":
        return [sqlite_trigger_ddl(table, op) for op in GUARDED_OPERATIONS]
    logger.warning("No append-only guard available for dialect %s", dialect_name)
    return []


def install_append_only_guards(metadata: MetaData) -> None:
    """Attach guard DDL to the append-only tables of ``metadata``.

    The triggers are emitted right after each table is created by
    ``metadata.create_all``. Safe to call more than once.
    """
    if metadata.info.get("append_only_guards"):
        return

    for table_name in APPEND_ONLY_TABLES:
        table = metadata.tables[table_name]
        event.listen(
            table,
            "after_create",
            DDL(POSTGRES_GUARD_FUNCTION).execute_if(dialect="postgresql"),
        )
        for dialect_name in ("postgresql", "sqlite"):
            for statement in guard_statements(dialect_name, table_name):
                event.listen(
                    table,
                    "after_create",
                    DDL(statement).execute_if(dialect=dialect_name),
                )

    metadata.info["append_only_guards"] = True


def _translate_violation(context: ExceptionContext) -> None:
    match = _VIOLATION_PATTERN.search(str(context.original_exception))
    if match:
        raise ImmutableRecordViolation(match.group(1), match.group(2)) from context.original_exception


def install_violation_translator(engine: AsyncEngine) -> None:
    """Raise ``ImmutableRecordViolation`` for guard errors on ``engine``."""
    event.listen(engine.sync_engine, "handle_error", _translate_violation)


async def set_append_only_guard(
    conn: AsyncConnection,
    table: str,
    operation: str,
    enabled: bool,
) -> None:
    """Enable or disable one guard trigger inside the current transaction.

    PostgreSQL requires the table owner's credential for this. On SQLite the
    trigger is dropped and recreated; both dialects roll the change back with
    the transaction.
    """
    _check_target(table, operation)
    name = trigger_name(table, operation)
    dialect_name = conn.dialect.name

    if dialect_name == "postgresql":
        action = "ENABLE" if enabled else "DISABLE"
        await conn.exec_driver_sql(f"ALTER TABLE {table} {action} TRIGGER {name}")
    elif dialect_name == "sqlite":
        if enabled:
            await conn.exec_driver_sql(sqlite_trigger_ddl(table, operation))
        else:
            await conn.exec_driver_sql(f"DROP TRIGGER IF EXISTS {name}")
    else:
        raise NotImplementedError(f"Append-only guard not supported on {dialect_name}")
