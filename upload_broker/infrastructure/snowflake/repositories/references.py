"""
Snowflake repository for stored object references.

This module implements the repository pattern for reference data access.
The repository:
1. Translates between StoredObjectReference and database rows
2. Encapsulates all SQL queries
3. Makes the completion write idempotent

Snowflake accepts UNIQUE constraints but does not enforce them, so the
locator key is enforced by the write itself: a single MERGE that only
inserts when no row with that locator exists. Repeating it, or running
it concurrently from two instances, leaves exactly one row.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import UUID

from upload_broker.core.uploads.models import StoredObjectReference


logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "MARKETPLACE"
    schema: str = "UPLOADS"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


class ReferenceStoreError(Exception):
    """Raised when the reference table is in an unexpected state."""
    pass


REFERENCE_COLUMNS = (
    "reference_id",
    "locator",
    "url",
    "pathname",
    "content_type",
    "size_bytes",
    "context",
    "token_id",
    "created_at",
)

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS stored_object_references (
        reference_id VARCHAR(36) NOT NULL,
        locator VARCHAR(2048) NOT NULL,
        url VARCHAR(2048) NOT NULL,
        pathname VARCHAR(1024) NOT NULL,
        content_type VARCHAR(255),
        size_bytes NUMBER(38, 0),
        context VARCHAR,
        token_id VARCHAR(64),
        created_at TIMESTAMP_TZ NOT NULL,
        CONSTRAINT pk_stored_object_references PRIMARY KEY (locator)
    )
"""

_MERGE_SQL = """
    MERGE INTO stored_object_references t
    USING (
        SELECT
            %s AS reference_id,
            %s AS locator,
            %s AS url,
            %s AS pathname,
            %s AS content_type,
            %s AS size_bytes,
            %s AS context,
            %s AS token_id,
            %s AS created_at
    ) s
    ON t.locator = s.locator
    WHEN NOT MATCHED THEN INSERT (
        reference_id, locator, url, pathname, content_type,
        size_bytes, context, token_id, created_at
    ) VALUES (
        s.reference_id, s.locator, s.url, s.pathname, s.content_type,
        s.size_bytes, s.context, s.token_id, s.created_at
    )
"""

_SELECT_SQL = f"""
    SELECT {", ".join(REFERENCE_COLUMNS)}
    FROM stored_object_references
    WHERE locator = %s
"""

_DELETE_SQL = """
    DELETE FROM stored_object_references
    WHERE locator = %s
"""


class ReferenceRepository:
    """
    Repository for stored object references.

    - record: insert-if-absent, keyed on locator
    - get: load a reference by locator
    - delete: remove a reference (the only mutation after creation)
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def record(self, reference: StoredObjectReference) -> tuple[StoredObjectReference, bool]:
        """
        Persist a reference unless one already exists for its locator.

        Returns the stored reference (the first writer's, on a duplicate)
        and whether this call created it.
        """
        cursor = self._conn.cursor()

        try:
            cursor.execute(_MERGE_SQL, self._to_row(reference))
            created = cursor.rowcount == 1
            self._conn.commit()

            cursor.execute(_SELECT_SQL, (reference.locator,))
            row = cursor.fetchone()
            if not row:
                raise ReferenceStoreError(
                    f"Reference for {reference.locator} missing after write"
                )

            return self._from_row(row), created

        except Exception as e:
            logger.error(
                "Failed to record object reference",
                extra={"locator": reference.locator, "error": str(e)}
            )
            raise
        finally:
            cursor.close()

    def get(self, locator: str) -> Optional[StoredObjectReference]:
        cursor = self._conn.cursor()

        try:
            cursor.execute(_SELECT_SQL, (locator,))
            row = cursor.fetchone()
            return self._from_row(row) if row else None
        finally:
            cursor.close()

    def delete(self, locator: str) -> bool:
        """Delete a reference. Returns False if there was nothing to delete."""
        cursor = self._conn.cursor()

        try:
            cursor.execute(_DELETE_SQL, (locator,))
            deleted = cursor.rowcount > 0
            self._conn.commit()

            logger.info(
                "Object reference deleted",
                extra={"locator": locator, "existed": deleted}
            )

            return deleted
        finally:
            cursor.close()

    def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        finally:
            cursor.close()

    @staticmethod
    def _to_row(reference: StoredObjectReference) -> tuple:
        return (
            str(reference.reference_id),
            reference.locator,
            reference.url,
            reference.pathname,
            reference.content_type,
            reference.size_bytes,
            json.dumps(reference.context, separators=(",", ":"), sort_keys=True),
            reference.token_id,
            reference.created_at,
        )

    @staticmethod
    def _from_row(row: tuple) -> StoredObjectReference:
        (
            reference_id,
            locator,
            url,
            pathname,
            content_type,
            size_bytes,
            context,
            token_id,
            created_at,
        ) = row

        return StoredObjectReference(
            reference_id=UUID(str(reference_id)),
            locator=locator,
            url=url,
            pathname=pathname,
            content_type=content_type,
            size_bytes=int(size_bytes) if size_bytes is not None else None,
            context=json.loads(context) if context else {},
            token_id=token_id,
            created_at=created_at,
        )
