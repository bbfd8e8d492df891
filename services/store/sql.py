"""SQLAlchemy-backed document store driver."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.database.document import DocumentRecord
from services.store.base import DocumentStore, StoredDocument, _ConflictDetected
from services.store.codec import from_json_value, to_json_value
from shared.errors import TransientStoreError
from shared.utils import setup_logging

logger = setup_logging("sql-document-store")


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class SqlDocumentStore(DocumentStore):
    """Persists documents in the `documents` table, one row per document path."""

    driver_name = "database"

    def __init__(self, session_factory: Callable[[], Session], transaction_max_attempts: int = 5) -> None:
        super().__init__(transaction_max_attempts=transaction_max_attempts)
        self._session_factory = session_factory

    @staticmethod
    def _to_stored(record: DocumentRecord) -> StoredDocument:
        return StoredDocument(
            path=record.path,
            data=from_json_value(record.data),
            create_time=_aware(record.create_time),
            update_time=_aware(record.update_time),
            version=record.version,
        )

    def _load(self, path: str) -> StoredDocument | None:
        try:
            with self._session_factory() as session:
                record = session.get(DocumentRecord, path)
                return self._to_stored(record) if record is not None else None
        except SQLAlchemyError as exc:
            logger.error(f"Failed to load document {path}: {exc}")
            raise TransientStoreError(f"Document read failed: {exc}") from exc

    def _load_collection(self, collection: str) -> list[StoredDocument]:
        try:
            with self._session_factory() as session:
                records = session.execute(
                    select(DocumentRecord).where(DocumentRecord.collection == collection)
                ).scalars().all()
                return [self._to_stored(record) for record in records]
        except SQLAlchemyError as exc:
            logger.error(f"Failed to load collection {collection}: {exc}")
            raise TransientStoreError(f"Collection read failed: {exc}") from exc

    def _persist(
        self,
        upserts: list[StoredDocument],
        deletes: list[str],
        preconditions: dict[str, int] | None = None,
    ) -> None:
        with self._session_factory() as session:
            try:
                # Re-check transaction reads inside the database transaction;
                # another process may have written since the in-process check.
                for path, version in (preconditions or {}).items():
                    current = session.get(DocumentRecord, path)
                    if (current.version if current is not None else 0) != version:
                        raise _ConflictDetected(path)

                for stored in upserts:
                    session.merge(
                        DocumentRecord(
                            path=stored.path,
                            collection=stored.collection,
                            doc_id=stored.id,
                            data=to_json_value(stored.data),
                            create_time=stored.create_time,
                            update_time=stored.update_time,
                            version=stored.version,
                        )
                    )
                if deletes:
                    session.execute(delete(DocumentRecord).where(DocumentRecord.path.in_(deletes)))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error(f"Failed to persist {len(upserts)} upserts/{len(deletes)} deletes: {exc}")
                raise TransientStoreError(f"Document write failed: {exc}") from exc
