"""Block cursors for ledger event indexers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.models import IndexerCursor


class CursorRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def get_block(self, name: str) -> int | None:
        cursor = self._session.get(IndexerCursor, name)
        return None if cursor is None else int(cursor.block_number)

    # ------------------------------------------------------------------
    # Mutations

    def advance(self, name: str, block_number: int, *, at: datetime) -> IndexerCursor:
        """Move the cursor forward; it never moves back."""

        cursor = self._session.get(IndexerCursor, name)
        if cursor is None:
            cursor = IndexerCursor(name=name, block_number=block_number, updated_at=at)
            self._session.add(cursor)
        elif block_number > cursor.block_number:
            cursor.block_number = block_number
            cursor.updated_at = at
        return cursor


__all__ = ["CursorRepository"]
