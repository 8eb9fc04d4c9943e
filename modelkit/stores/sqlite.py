"""SQLite store with async SQLAlchemy.

Context layering:

    [child contexts] -> [interactive context] -> [writer context] -> [file]

- Interactive context: an AsyncSession used for immediate reads/writes.
  Its pending changes live in memory until `save_interactive()` flushes them
  inside a SAVEPOINT; a failed flush leaves the writer context untouched.
- Writer context: the interactive session's database transaction. Flushed
  changes are visible to every context but are durable only after `save()`.
- Child contexts: transient sessions opened by `run_async()` on a SAVEPOINT
  inside the writer transaction. Releasing the savepoint hands their changes
  to the writer context; a failed save rolls back to the savepoint only.

All context operations serialise on one asyncio lock. Blocks passed to
`run()` / `run_async()` must not call back into the manager.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from sqlalchemy import MetaData, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.schema import CreateColumn

from modelkit.settings import Settings, get_settings

logger = logging.getLogger("modelkit")

Block = Callable[[AsyncSession], Any]
Callback = Callable[[], "None | Awaitable[None]"]


class StoreError(RuntimeError):
    pass


class AlreadyInitializedError(StoreError):
    pass


class CannotCreateModelError(StoreError):
    pass


class MigrationError(StoreError):
    pass


class StoreNotInitializedError(StoreError):
    pass


def load_model_metadata(model_name: str) -> MetaData:
    """Resolve a model name to its SQLAlchemy metadata.

    The name is a dotted module path, optionally followed by `:attribute`.
    The target must be a MetaData or expose one through `.metadata`; a module
    without an explicit attribute is searched for `metadata`, then `Base`.

    Raises:
        CannotCreateModelError: If the model cannot be imported or declares no tables.
    """
    module_name, _, attribute = model_name.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise CannotCreateModelError(f"Cannot import model {model_name!r}: {e}") from e

    if attribute:
        target = getattr(target, attribute, None)
    elif not isinstance(getattr(target, "metadata", None), MetaData):
        target = getattr(target, "Base", None)

    metadata = target if isinstance(target, MetaData) else getattr(target, "metadata", None)
    if not isinstance(metadata, MetaData):
        raise CannotCreateModelError(f"Model {model_name!r} exposes no SQLAlchemy metadata")
    if not metadata.tables:
        raise CannotCreateModelError(f"Model {model_name!r} declares no tables")
    return metadata


def migrate_lightweight(connection: Connection, metadata: MetaData) -> None:
    """Create missing tables and add missing nullable/defaulted columns.

    Columns the model no longer declares are left in place, and column type
    changes are not detected.

    Raises:
        MigrationError: If a missing column can be neither NULL nor defaulted.
    """
    inspector = sa_inspect(connection)
    existing = set(inspector.get_table_names())
    preparer = connection.dialect.identifier_preparer

    for table in metadata.sorted_tables:
        if table.name not in existing:
            continue
        present = {col["name"] for col in inspector.get_columns(table.name)}
        for name in sorted(present - {column.name for column in table.columns}):
            logger.warning(f"Column {table.name}.{name} is not in the model; leaving it in place")
        for column in table.columns:
            if column.name in present:
                continue
            if not column.nullable and column.server_default is None:
                raise MigrationError(
                    f"Cannot infer migration for {table.name}.{column.name}: "
                    "column is NOT NULL without a server default"
                )
            ddl = CreateColumn(column).compile(dialect=connection.dialect)
            logger.info(f"Adding column {table.name}.{column.name}")
            connection.exec_driver_sql(f"ALTER TABLE {preparer.format_table(table)} ADD COLUMN {ddl}")

    metadata.create_all(connection, checkfirst=True)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class StoreManager:
    """Owns the SQLite store and its interactive/writer context pair."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._main: AsyncSession | None = None
        self._metadata: MetaData | None = None
        self._lock = asyncio.Lock()
        self._writer_has_changes = False
        self.database_file: Path | None = None

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def is_initialized(self) -> bool:
        return self._main is not None

    @property
    def engine(self) -> AsyncEngine | None:
        return self._engine

    @property
    def metadata(self) -> MetaData | None:
        return self._metadata

    @property
    def has_changes(self) -> bool:
        """True if either the interactive or the writer context holds unsaved changes."""
        return self._writer_has_changes or self._interactive_has_changes()

    def _interactive_has_changes(self) -> bool:
        session = self._main
        if session is None:
            return False
        return bool(session.new or session.deleted or session.dirty)

    def _require_main(self) -> AsyncSession:
        if self._main is None:
            raise StoreNotInitializedError("Data store not initialized. Call initialize() first.")
        return self._main

    # ============================================================
    # Setup / teardown
    # ============================================================

    async def initialize(self, model_name: str, path: str | None = None) -> None:
        """Open the store file and build the context pair.

        Args:
            model_name: Dotted path to the model (see `load_model_metadata`).
            path: Store path relative to the documents directory.

        Raises:
            AlreadyInitializedError: If a store is already open.
            CannotCreateModelError: If the model cannot be loaded.
            MigrationError: If the existing file cannot be migrated.
        """
        settings = self.settings
        db_file = settings.documents_dir / (path or settings.database_path)
        logger.info(f"Store database at {db_file}")

        if self._main is not None:
            raise AlreadyInitializedError(f"Data store already initialized at {self.database_file}")

        metadata = load_model_metadata(model_name)
        db_file.parent.mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=settings.debug)
        _configure_sqlite(engine, journal_mode=settings.sqlite_journal_mode)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(migrate_lightweight, metadata)
        except Exception:
            await engine.dispose()
            raise

        session = AsyncSession(engine, autoflush=False, expire_on_commit=False)
        event.listen(session.sync_session, "after_flush", self._on_interactive_flush)
        event.listen(session.sync_session, "do_orm_execute", self._on_interactive_execute)

        self._engine = engine
        self._metadata = metadata
        self._main = session
        self._writer_has_changes = False
        self.database_file = db_file

    async def close(self) -> None:
        """Close the context pair, discarding changes not saved to disk."""
        if self._main is not None:
            await self._main.close()
            self._main = None
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._metadata = None
        self._writer_has_changes = False
        self.database_file = None

    def _on_interactive_flush(self, session: Any, flush_context: Any) -> None:
        self._writer_has_changes = True

    def _on_interactive_execute(self, orm_execute_state: Any) -> None:
        # Bulk ORM DML bypasses the flush.
        if orm_execute_state.is_insert or orm_execute_state.is_update or orm_execute_state.is_delete:
            self._writer_has_changes = True

    # ============================================================
    # Saving
    # ============================================================

    async def save_interactive(self) -> bool:
        """Push interactive-context changes into the writer context.

        The changes are not durable until `save()` is called.

        Returns:
            False if the flush failed, True otherwise.
        """
        async with self._lock:
            return await self._save_interactive_locked()

    async def _save_interactive_locked(self) -> bool:
        session = self._main
        if session is None or not self._interactive_has_changes():
            return True
        return await self._flush_into_writer(session)

    async def _flush_into_writer(self, session: AsyncSession) -> bool:
        """Flush the interactive changes inside a SAVEPOINT.

        `begin_nested()` flushes whatever is pending before the SAVEPOINT is
        opened, so pending objects are detached first and re-attached once
        it is. A failed flush then rolls back to the savepoint only: the
        failed changes are discarded and the writer context keeps what it
        already holds.
        """
        new = list(session.new)
        deleted = list(session.deleted)
        dirty = list(session.dirty)
        for obj in new + dirty + deleted:
            # Expunge cascades may already have detached it.
            if obj in session:
                session.expunge(obj)

        nested = await session.begin_nested()
        try:
            session.add_all(new + dirty)
            for obj in deleted:
                await session.delete(obj)
            await session.flush()
        except SQLAlchemyError as e:
            self._process_save_error(e)
            await nested.rollback()
            return False
        await nested.commit()
        return True

    async def save(self, then: Callback | None = None) -> bool:
        """Commit the writer context to disk.

        No-op when nothing is pending: `then` is called immediately. Pending
        interactive changes are pushed into the writer context first.

        Args:
            then: Callback run after a successful save (sync or async).

        Returns:
            False if the save failed (the failure is logged and `then` is not called).
        """
        async with self._lock:
            session = self._main
            if session is None or not self.has_changes:
                if then is not None:
                    await _call(then)
                return True
            if self._interactive_has_changes() and not await self._flush_into_writer(session):
                return False
            try:
                await session.commit()
            except SQLAlchemyError as e:
                self._process_save_error(e)
                await self._rollback_writer()
                return False
            self._writer_has_changes = False

        if then is not None:
            await _call(then)
        return True

    async def persist(self) -> bool:
        """Push interactive changes into the writer context, then save on disk."""
        if not await self.save_interactive():
            return False
        return await self.save()

    async def _rollback_writer(self) -> None:
        session = self._main
        if session is not None:
            await session.rollback()
        self._writer_has_changes = False

    def _process_save_error(self, error: Exception) -> None:
        logger.error(f"Failed to save context: {error}")

    # ============================================================
    # Running blocks
    # ============================================================

    async def run(self, block: Block, *, save: bool = False, persist: bool = False) -> Any:
        """Run `block(session)` on the interactive context and return its result.

        Args:
            block: Callable receiving the interactive AsyncSession (sync or async).
            save: Push the changes into the writer context afterwards.
            persist: Push the changes into the writer context, then save on disk.

        Raises:
            StoreNotInitializedError: If the store is not initialized.
        """
        async with self._lock:
            session = self._require_main()
            result = await _call(block, session)
            if save or persist:
                await self._save_interactive_locked()
        if persist:
            await self.save()
        return result

    def run_async(self, block: Block, then: Callback | None = None) -> asyncio.Task[Any]:
        """Schedule `block(child)` on a transient child context.

        The child is saved when the block returns and its changes propagate
        to the interactive context. `save()` must still be called to make
        them durable.

        Args:
            block: Callable receiving the child AsyncSession (sync or async).
            then: Callback run once the child has been saved (or failed to).

        Returns:
            The scheduled task; it resolves to the block's result.

        Raises:
            StoreNotInitializedError: If the store is not initialized.
        """
        self._require_main()
        return asyncio.create_task(self._run_child(block, then))

    async def _run_child(self, block: Block, then: Callback | None) -> Any:
        async with self._lock:
            main = self._require_main()
            connection = await main.connection()
            child = AsyncSession(
                bind=connection,
                join_transaction_mode="create_savepoint",
                expire_on_commit=False,
            )
            touched: list[Any] = []
            bulk_changes: list[bool] = []

            def collect(session: Any, flush_context: Any) -> None:
                touched.extend((obj, False) for obj in session.new)
                touched.extend((obj, False) for obj in session.dirty)
                touched.extend((obj, True) for obj in session.deleted)

            def collect_bulk(orm_execute_state: Any) -> None:
                if orm_execute_state.is_insert or orm_execute_state.is_update or orm_execute_state.is_delete:
                    bulk_changes.append(True)

            event.listen(child.sync_session, "after_flush", collect)
            event.listen(child.sync_session, "do_orm_execute", collect_bulk)
            try:
                result = await _call(block, child)
                try:
                    await child.commit()
                except SQLAlchemyError as e:
                    self._process_save_error(e)
                    await child.rollback()
                else:
                    if touched or bulk_changes:
                        self._writer_has_changes = True
                    self._merge_into_interactive(main, touched)
            finally:
                await child.close()

        if then is not None:
            await _call(then)
        return result

    def _merge_into_interactive(self, main: AsyncSession, touched: list[Any]) -> None:
        for obj, deleted in touched:
            key = sa_inspect(obj).identity_key
            if key is None:
                continue
            existing = main.identity_map.get(key)
            if existing is None:
                continue
            if deleted:
                main.expunge(existing)
            else:
                main.expire(existing)

    # ============================================================
    # Rollback
    # ============================================================

    async def rollback(self) -> None:
        """Discard interactive-context changes not yet saved into the writer context."""
        async with self._lock:
            session = self._main
            if session is None:
                return
            for obj in list(session.new):
                session.expunge(obj)
            for obj in list(session.deleted):
                session.expunge(obj)
            for obj in list(session.dirty):
                session.expire(obj)


def _configure_sqlite(engine: AsyncEngine, *, journal_mode: str) -> None:
    """Hand transaction control to SQLAlchemy so SAVEPOINTs work with aiosqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Disable the driver's own BEGIN handling; BEGIN is emitted below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


# Shared instance
data_store = StoreManager()
