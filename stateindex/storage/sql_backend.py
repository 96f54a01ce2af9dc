"""
SQL Storage Backend for StateIndex.

This module implements the persistent storage layer using SQLAlchemy.
It owns the engine and session factory, the upsert-on-conflict helper used
by every bulk write, and the chain cursor.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from sqlalchemy import create_engine, func
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from stateindex.core.types import Block
from stateindex.storage.models import (
    Base, StateModel, WasmStateEventModel, WasmStateEventTransformationModel
)

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def escape_like(text: str) -> str:
    """Escape LIKE metacharacters so text matches literally (escape char is backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def like_pattern(dependent_body: str, prefix: bool = False) -> str:
    """Build a LIKE pattern from a key or name, translating the "*" wildcard to "%"."""
    pattern = "%".join(escape_like(part) for part in dependent_body.split("*"))
    return pattern + "%" if prefix else pattern


class SqlStorageBackend:
    """
    Persistent storage backend using a SQL database.
    """

    def __init__(self, connection_string: str, echo: bool = False, chunk_size: int = 500):
        """
        Initialize the SQL Storage Backend.

        Args:
            connection_string: SQL connection string (e.g., sqlite:///stateindex.db)
            echo: Log every SQL statement
            chunk_size: Maximum rows per bulk upsert statement
        """
        self.db_url = connection_string
        self.chunk_size = chunk_size
        self.engine = create_engine(self.db_url, echo=echo)

        # Create all tables (if they don't exist)
        Base.metadata.create_all(self.engine)

        # Create thread-safe session factory
        self.Session = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))
        # Per-thread nesting depth of session_scope
        self._scope_state = threading.local()

        logger.info(f"SqlStorageBackend initialized with {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope: commit on success, rollback and re-raise on failure.

        A scope opened inside another one on the same thread joins the outer
        transaction: it sees the outer scope's pending writes and leaves
        commit, rollback and close to the outermost scope.
        """
        session = self.Session()
        depth = getattr(self._scope_state, "depth", 0)
        self._scope_state.depth = depth + 1
        if depth:
            try:
                yield session
            finally:
                self._scope_state.depth = depth
            return

        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            self._scope_state.depth = 0
            session.close()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def upsert(
        self,
        session: Session,
        model: Any,
        rows: list[dict[str, Any]],
        index_elements: list[str],
        update_columns: list[str]
    ) -> int:
        """
        Insert rows, replacing the given columns when the natural key already exists.

        Args:
            session: Active session
            model: ORM model class
            rows: Column dictionaries
            index_elements: Columns forming the conflict target
            update_columns: Columns overwritten on conflict

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        insert = _DIALECT_INSERTS.get(self.dialect)
        for start in range(0, len(rows), self.chunk_size):
            chunk = rows[start:start + self.chunk_size]
            if insert is None:
                for row in chunk:
                    self._merge_row(session, model, row, index_elements, update_columns)
                continue

            statement = insert(model).values(chunk)
            statement = statement.on_conflict_do_update(
                index_elements=index_elements,
                set_={column: statement.excluded[column] for column in update_columns}
            )
            session.execute(statement)

        return len(rows)

    @staticmethod
    def _merge_row(session: Session, model: Any, row: dict[str, Any], index_elements: list[str],
                   update_columns: list[str]) -> None:
        existing = session.query(model).filter_by(**{column: row[column] for column in index_elements}).first()
        if existing is None:
            session.add(model(**row))
            session.flush()
            return
        for column in update_columns:
            setattr(existing, column, row[column])

    def get_state(self) -> Optional[dict[str, Any]]:
        """Retrieve the chain cursor."""
        with self.session_scope() as session:
            state = session.get(StateModel, True)
            if state is None:
                return None
            return {
                "chain_id": state.chain_id,
                "latest_block_height": state.latest_block_height,
                "latest_block_time_unix_ms": state.latest_block_time_unix_ms
            }

    def get_latest_block(self) -> Optional[Block]:
        state = self.get_state()
        if state is None:
            return None
        return Block(state["latest_block_height"], state["latest_block_time_unix_ms"])

    def update_state(self, session: Session, chain_id: str, block: Block) -> None:
        """Advance the chain cursor; it never moves backwards."""
        state = session.get(StateModel, True)
        if state is None:
            session.add(StateModel(
                singleton=True,
                chain_id=chain_id,
                latest_block_height=block.height,
                latest_block_time_unix_ms=block.time_unix_ms
            ))
            return
        if block.height > state.latest_block_height:
            state.latest_block_height = block.height
            state.latest_block_time_unix_ms = block.time_unix_ms

    def get_block_for_height(self, height: int) -> Optional[Block]:
        """
        Resolve a height to a block using stored block times.

        The time comes from the newest event or transformation at or below
        the height, or the chain cursor when it sits exactly at the height.

        Returns:
            The block, or None if nothing was ingested at or below the height
        """
        latest = self.get_latest_block()
        if latest is not None and latest.height == height:
            return latest

        with self.session_scope() as session:
            candidates = []
            for model in (WasmStateEventModel, WasmStateEventTransformationModel):
                row = (
                    session.query(model.block_height, func.max(model.block_time_unix_ms))
                    .filter(model.block_height <= height)
                    .group_by(model.block_height)
                    .order_by(model.block_height.desc())
                    .first()
                )
                if row is not None:
                    candidates.append(Block(row[0], row[1]))

        if not candidates:
            return None
        found = max(candidates)
        # Heights between recorded blocks take the time of the block before them
        return Block(height, found.time_unix_ms)

    def _stored_blocks(self, *criteria, descending: bool) -> list[Block]:
        """First stored block per dependable table matching the time criteria."""
        blocks = []
        with self.session_scope() as session:
            for model in (WasmStateEventModel, WasmStateEventTransformationModel):
                order = model.block_height.desc() if descending else model.block_height.asc()
                row = (
                    session.query(model.block_height, model.block_time_unix_ms)
                    .filter(*(criterion(model) for criterion in criteria))
                    .order_by(order)
                    .first()
                )
                if row is not None:
                    blocks.append(Block(row[0], row[1]))
        return blocks

    def get_block_for_time(self, time_unix_ms: int, after: int = 0) -> Optional[Block]:
        """Latest stored block with a time in (after, time_unix_ms]."""
        blocks = self._stored_blocks(
            lambda model: model.block_time_unix_ms > after,
            lambda model: model.block_time_unix_ms <= time_unix_ms,
            descending=True
        )
        return max(blocks) if blocks else None

    def get_next_block_for_time(self, time_unix_ms: int) -> Optional[Block]:
        """Earliest stored block with a time after time_unix_ms."""
        blocks = self._stored_blocks(lambda model: model.block_time_unix_ms > time_unix_ms, descending=False)
        return min(blocks) if blocks else None

    def close(self):
        """Close connection pool."""
        self.Session.remove()
        self.engine.dispose()
        logger.info("SqlStorageBackend closed")
