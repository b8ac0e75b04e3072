"""
Snowflake database connection management.

Provides connection factory and context manager for Snowflake operations.
Includes mock mode with in-memory storage for local development.

Using the repository pattern means most code never touches this module
directly - it goes through ReferenceRepository which handles the
translation between domain models and database rows.
"""

import base64
import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Callable, ContextManager, Generator, Optional

from .repositories.references import SnowflakeConfig, SnowflakeConnection

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


def _private_key_to_der(pem_bytes: bytes) -> bytes:
    """
    Convert a PEM private key into the DER/PKCS8 bytes snowflake-connector
    expects for key-pair authentication.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(
        pem_bytes,
        password=None,  # No password on the key
        backend=default_backend()
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _load_private_key(config: SnowflakeConfig) -> Optional[bytes]:
    """Load the private key from a file path or a base64 env value."""
    if config.private_key_path:
        with open(config.private_key_path, 'rb') as key_file:
            return _private_key_to_der(key_file.read())

    if config.private_key_base64:
        return _private_key_to_der(base64.b64decode(config.private_key_base64))

    return None


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports both password and key-pair authentication:
    - If a private key (path or base64) is set, uses key-pair auth
    - Otherwise, uses password auth

    Usage:
        with get_snowflake_connection(config) as conn:
            cursor = conn.cursor()
            # do work
            conn.commit()
    """
    try:
        import snowflake.connector
    except ImportError:
        raise ImportError(
            "snowflake-connector-python is required. "
            "Install with: pip install snowflake-connector-python"
        )

    connect_params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'client_session_keep_alive': True,
    }

    private_key = _load_private_key(config)
    if private_key:
        logger.info("Using key-pair authentication for Snowflake")
        connect_params['private_key'] = private_key
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        connect_params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    try:
        conn = snowflake.connector.connect(**connect_params)
    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}")

    logger.debug(
        "Established Snowflake connection",
        extra={
            "account": config.account,
            "database": config.database,
            "schema": config.schema,
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
            logger.debug("Closed Snowflake connection")
        except Exception as e:
            logger.warning(
                "Error closing Snowflake connection",
                extra={"error": str(e)}
            )


class LazySnowflakeConnection:
    """
    A Snowflake connection that is only opened on first use.

    Request handlers get their repository before they know whether they
    will touch the database at all; a completion callback with a bad
    signature must be answered without connecting. Connection errors
    surface from the first `cursor()` call, inside the repository
    operation that needed it.
    """

    def __init__(
        self,
        config: SnowflakeConfig,
        connect: Callable[[SnowflakeConfig], ContextManager[SnowflakeConnection]] = get_snowflake_connection,
    ) -> None:
        self._config = config
        self._connect = connect
        self._stack: Optional[ExitStack] = None
        self._conn: Optional[SnowflakeConnection] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _connection(self) -> SnowflakeConnection:
        if self._conn is None:
            stack = ExitStack()
            self._conn = stack.enter_context(self._connect(self._config))
            self._stack = stack
        return self._conn

    def cursor(self):
        return self._connection().cursor()

    def commit(self) -> None:
        if self._conn is not None:
            self._conn.commit()

    def close(self) -> None:
        if self._stack is not None:
            self._stack.close()
        self._stack = None
        self._conn = None


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Implements just enough of the cursor interface to support
    ReferenceRepository operations without a real database: the keyed
    MERGE, SELECT by locator, DELETE by locator and the health query.
    """

    def __init__(self, storage: dict, lock: threading.Lock) -> None:
        self._storage = storage
        self._lock = lock
        self._results: list = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        """
        Execute a query against mock storage.

        Dispatches on the statement shape. This is simplified but
        sufficient for testing the API flow.
        """
        logger.debug(
            "Mock cursor execute",
            extra={"query": query.strip()[:100], "params": params}
        )

        query_upper = query.upper().strip()
        self._results = []
        self._rowcount = 0

        if 'MERGE INTO' in query_upper:
            self._handle_merge(query_upper, params)

        elif query_upper.startswith('SELECT'):
            self._handle_select(query_upper, params)

        elif query_upper.startswith('DELETE'):
            self._handle_delete(query_upper, params)

        return self

    def _handle_merge(self, query: str, params: Optional[tuple]) -> None:
        """Insert-if-absent keyed on locator, like the real MERGE."""
        if not params or 'STORED_OBJECT_REFERENCES' not in query:
            return

        locator = params[1]
        table = self._storage['stored_object_references']
        with self._lock:
            if locator in table:
                self._rowcount = 0
            else:
                table[locator] = tuple(params)
                self._rowcount = 1

    def _handle_select(self, query: str, params: Optional[tuple]) -> None:
        if 'FROM STORED_OBJECT_REFERENCES' in query and params:
            row = self._storage['stored_object_references'].get(params[0])
            self._results = [row] if row else []
        elif query == 'SELECT 1':
            self._results = [(1,)]

    def _handle_delete(self, query: str, params: Optional[tuple]) -> None:
        if 'STORED_OBJECT_REFERENCES' in query and params:
            with self._lock:
                removed = self._storage['stored_object_references'].pop(params[0], None)
            self._rowcount = 1 if removed else 0

    def fetchone(self):
        """Fetch one row from results."""
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        """Fetch all rows from results."""
        return self._results

    def close(self) -> None:
        """Close cursor (no-op for mock)."""
        pass

    @property
    def rowcount(self) -> int:
        """Return number of rows affected."""
        return self._rowcount


class MockSnowflakeConnection:
    """
    Mock Snowflake connection for local development.

    Stores data in memory using a simple dictionary structure.
    This enables testing the full API without a real database.
    """

    def __init__(self) -> None:
        # In-memory storage: {table_name: {locator: row_tuple}}
        self._storage: dict[str, dict[str, tuple]] = {
            'stored_object_references': {},
        }
        self._lock = threading.Lock()

        logger.info("Initialized mock Snowflake connection (in-memory)")

    def cursor(self) -> MockSnowflakeCursor:
        """Create a mock cursor."""
        return MockSnowflakeCursor(self._storage, self._lock)

    def commit(self) -> None:
        """Commit transaction (no-op for mock, always auto-commits)."""
        logger.debug("Mock connection commit")

    def rollback(self) -> None:
        """Rollback transaction (no-op for mock)."""
        logger.debug("Mock connection rollback")

    def close(self) -> None:
        """Close connection (no-op for mock)."""
        logger.debug("Mock connection close")

    # Helper methods for testing
    def _reference_count(self) -> int:
        return len(self._storage['stored_object_references'])

    def _clear(self) -> None:
        """Clear all mock storage (for test cleanup)."""
        for table in self._storage.values():
            table.clear()


@contextmanager
def get_mock_snowflake_connection() -> Generator[MockSnowflakeConnection, None, None]:
    """Provide mock Snowflake connection for local development."""
    conn = MockSnowflakeConnection()
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig] = None,
    mock_mode: bool = False,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Create Snowflake connection based on configuration.

    Args:
        config: Snowflake configuration (required if not mock_mode)
        mock_mode: If True, return mock connection for testing

    Yields:
        SnowflakeConnection implementation (real or mock)
    """
    if mock_mode:
        with get_mock_snowflake_connection() as conn:
            yield conn
    else:
        if config is None:
            raise ValueError("config is required when not in mock mode")

        with get_snowflake_connection(config) as conn:
            yield conn
