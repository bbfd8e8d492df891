"""In-process document store driver."""

from __future__ import annotations

import copy

from services.store.base import DocumentStore, StoredDocument


class MemoryDocumentStore(DocumentStore):
    """Keeps documents in a dict; used for tests and single-process development."""

    driver_name = "memory"

    def __init__(self, transaction_max_attempts: int = 5) -> None:
        super().__init__(transaction_max_attempts=transaction_max_attempts)
        self._documents: dict[str, StoredDocument] = {}

    def _load(self, path: str) -> StoredDocument | None:
        stored = self._documents.get(path)
        return copy.deepcopy(stored) if stored is not None else None

    def _load_collection(self, collection: str) -> list[StoredDocument]:
        return [
            copy.deepcopy(stored)
            for stored in self._documents.values()
            if stored.collection == collection
        ]

    def _persist(
        self,
        upserts: list[StoredDocument],
        deletes: list[str],
        preconditions: dict[str, int] | None = None,
    ) -> None:
        for stored in upserts:
            self._documents[stored.path] = copy.deepcopy(stored)
        for path in deletes:
            self._documents.pop(path, None)

    def clear(self) -> None:
        """Drop every document and listener (primarily for tests)."""
        self._documents.clear()
        self.close()
