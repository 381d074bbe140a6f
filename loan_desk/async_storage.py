"""
Async Storage Backend Module

Provides the async storage interface used by the engine, async wrappers around
the sync in-memory and SQLite backends, and a production async PostgreSQL
backend using asyncpg. Unique indexes are enforced by the backend itself so
that racing writers are turned into ConflictError instead of silent
duplicates.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from contextlib import asynccontextmanager
import contextvars
import json
import asyncio

from .config import LoanDeskConfig, get_config
from .errors import ConflictError, TransientStoreError
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage, UniqueIndex


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    async def initialize(self) -> None:
        """Open connections (default no-op)"""
        pass

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into a record; False when it does not exist"""
        pass

    @abstractmethod
    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any]) -> bool:
        """Merge changes only while the record still matches expected; False otherwise"""
        pass

    @abstractmethod
    async def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete all records matching filters"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def create_collection(self, table: str) -> None:
        """Create a collection if missing"""
        pass

    @abstractmethod
    async def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        """Declare a uniqueness constraint"""
        pass

    async def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first matching record, or None"""
        results = await self.find(table, filters)
        return results[0] if results else None

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except Exception:
            await self.rollback()
            raise


class AsyncStorageWrapper(AsyncStorageInterface):
    """Async wrapper that runs a sync backend in the default thread pool.

    Each call holds an asyncio lock for the duration of one store operation
    only; separate operations from concurrent requests still interleave.

    The sync backends have one transaction for the whole store, so an open
    transaction belongs to the task that started it. Calls from any other
    task wait until it commits or rolls back.
    """

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()
        self._transaction_lock = asyncio.Lock()
        self._owns_transaction = contextvars.ContextVar(
            f"wrapper_transaction_{id(self)}", default=False
        )

    async def _call(self, func, *args):
        async with self._lock:
            # Run sync operation in thread pool to avoid blocking
            return await asyncio.to_thread(func, *args)

    async def _run(self, func, *args):
        if self._owns_transaction.get():
            return await self._call(func, *args)
        async with self._transaction_lock:
            return await self._call(func, *args)

    @asynccontextmanager
    async def atomic(self):
        """Run the block in one transaction, excluding other tasks' calls"""
        if self._owns_transaction.get():
            # Nested block joins the enclosing transaction
            yield
            return

        async with self._transaction_lock:
            token = self._owns_transaction.set(True)
            try:
                await self._call(self._sync_storage.begin_transaction)
                try:
                    yield
                    await self._call(self._sync_storage.commit)
                except Exception:
                    await self._call(self._sync_storage.rollback)
                    raise
            finally:
                self._owns_transaction.reset(token)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._run(self._sync_storage.save, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.load_all, table)

    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        return await self._run(self._sync_storage.update, table, record_id, changes)

    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any]) -> bool:
        return await self._run(self._sync_storage.update_if, table, record_id, expected, changes)

    async def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        return await self._run(self._sync_storage.delete_many, table, filters)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.find, table, filters)

    async def create_collection(self, table: str) -> None:
        await self._run(self._sync_storage.create_collection, table)

    async def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        await self._run(self._sync_storage.create_unique_index, table, index)

    async def close(self) -> None:
        await asyncio.to_thread(self._sync_storage.close)


class AsyncInMemoryStorage(AsyncStorageWrapper):
    """Async wrapper around InMemoryStorage"""

    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncSQLiteStorage(AsyncStorageWrapper):
    """Async wrapper around SQLiteStorage"""

    def __init__(self, db_path: str = ":memory:"):
        super().__init__(SQLiteStorage(db_path))


def _text(value: Any) -> str:
    """Text form of a value as returned by the ->> operator"""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg.

    Documents live in a JSONB column. Range operators compare the text form
    of fields, which is correct for the fixed-width timestamps the engine
    stores.

    Open transactions are tracked per task in a context variable, so a
    transaction started by one request never carries another request's
    statements.
    """

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._transaction_stack = contextvars.ContextVar(
            f"pg_transactions_{id(self)}", default=()
        )

    async def initialize(self):
        """Create connection pool; call on app startup"""
        try:
            import asyncpg
        except ImportError:
            raise ImportError("asyncpg is required for AsyncPostgreSQLStorage")
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=self.pool_size,
                command_timeout=60
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise TransientStoreError(f"Could not connect to PostgreSQL: {e}") from e

    async def close(self):
        """Close pool; call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self):
        """Yield the open transaction's connection, or a pooled one"""
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")

        import asyncpg

        try:
            stack = self._transaction_stack.get()
            if stack:
                yield stack[-1][0]
            else:
                async with self.pool.acquire() as conn:
                    yield conn
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Unique constraint violated: {e}") from e
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            raise TransientStoreError(f"PostgreSQL error: {e}") from e

    @staticmethod
    def _decode(data: Any) -> Dict[str, Any]:
        if isinstance(data, str):
            return json.loads(data)
        return dict(data)

    def _where(self, filters: Dict[str, Any], params: Optional[List[Any]] = None):
        """Build a WHERE clause over JSONB fields, numbering after any given params"""
        conditions = []
        params = list(params or [])

        def param(value):
            params.append(value)
            return f"${len(params)}"

        for key, condition in filters.items():
            field = f"(data->>{param(key)}::text)"
            if isinstance(condition, dict):
                for op, operand in condition.items():
                    if op == "$in":
                        conditions.append(f"{field} = ANY({param([_text(v) for v in operand])}::text[])")
                    elif op == "$ne":
                        conditions.append(f"{field} IS DISTINCT FROM {param(_text(operand))}")
                    elif op == "$gte":
                        conditions.append(f"{field} >= {param(_text(operand))}")
                    elif op == "$lte":
                        conditions.append(f"{field} <= {param(_text(operand))}")
                    else:
                        raise ValueError(f"Unsupported filter operator: {op}")
            else:
                conditions.append(f"{field} = {param(_text(condition))}")

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        return where_clause, params

    async def create_collection(self, table: str) -> None:
        async with self._connection() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS "{table}" (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                )
            ''')

    async def create_unique_index(self, table: str, index: UniqueIndex) -> None:
        expression = f"(data->>'{index.field}')"
        where = ""
        if index.min_value is not None:
            where = (
                f"WHERE jsonb_typeof(data->'{index.field}') = 'number' "
                f"AND (data->>'{index.field}')::numeric >= {int(index.min_value)}"
            )
        async with self._connection() as conn:
            await conn.execute(f'''
                CREATE UNIQUE INDEX IF NOT EXISTS "{table}_{index.name}"
                ON "{table}" ({expression}) {where}
            ''')

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a record"""
        async with self._connection() as conn:
            await conn.execute(f'''
                INSERT INTO "{table}" (id, data, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
            ''', record_id, json.dumps(data, default=str))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode(row['data']) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode(row['data']) for row in rows]

    async def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes with the jsonb concatenation operator"""
        async with self._connection() as conn:
            result = await conn.execute(f'''
                UPDATE "{table}" SET data = data || $2::jsonb, updated_at = NOW()
                WHERE id = $1
            ''', record_id, json.dumps(changes, default=str))
            return result != 'UPDATE 0'

    async def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                        changes: Dict[str, Any]) -> bool:
        """Merge changes in one statement guarded by the expected field values"""
        where_clause, params = self._where(expected, [record_id, json.dumps(changes, default=str)])
        async with self._connection() as conn:
            result = await conn.execute(f'''
                UPDATE "{table}" SET data = data || $2::jsonb, updated_at = NOW()
                WHERE id = $1 AND {where_clause}
            ''', *params)
            return result != 'UPDATE 0'

    async def delete_many(self, table: str, filters: Dict[str, Any]) -> int:
        where_clause, params = self._where(filters)
        async with self._connection() as conn:
            result = await conn.execute(f'DELETE FROM "{table}" WHERE {where_clause}', *params)
            # asyncpg returns the command tag, e.g. "DELETE 3"
            return int(result.split()[-1])

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        where_clause, params = self._where(filters)
        async with self._connection() as conn:
            rows = await conn.fetch(
                f'SELECT data FROM "{table}" WHERE {where_clause} ORDER BY created_at', *params
            )
            return [self._decode(row['data']) for row in rows]

    async def begin_transaction(self) -> None:
        """Start a database transaction"""
        if not self.pool:
            raise RuntimeError("Pool not initialized")

        conn = await self.pool.acquire()
        transaction = conn.transaction()
        await transaction.start()

        self._transaction_stack.set(self._transaction_stack.get() + ((conn, transaction),))

    async def commit(self) -> None:
        """Commit current transaction"""
        stack = self._transaction_stack.get()
        if not stack:
            return

        conn, transaction = stack[-1]
        self._transaction_stack.set(stack[:-1])
        try:
            await transaction.commit()
        finally:
            await self.pool.release(conn)

    async def rollback(self) -> None:
        """Rollback current transaction"""
        stack = self._transaction_stack.get()
        if not stack:
            return

        conn, transaction = stack[-1]
        self._transaction_stack.set(stack[:-1])
        try:
            await transaction.rollback()
        finally:
            await self.pool.release(conn)


def create_async_storage(config: Optional[LoanDeskConfig] = None) -> AsyncStorageInterface:
    """Factory function to create async storage instances from configuration"""
    config = config or get_config()
    storage_type = config.storage_type.lower()

    if storage_type == "postgresql":
        if not config.database_url:
            raise ValueError("LOANDESK_DATABASE_URL is required for postgresql storage")
        return AsyncPostgreSQLStorage(config.database_url, config.database_pool_size)
    if storage_type == "sqlite":
        return AsyncSQLiteStorage(config.sqlite_path)
    if storage_type == "memory":
        return AsyncInMemoryStorage()
    raise ValueError(f"Unknown storage type: {config.storage_type}")
