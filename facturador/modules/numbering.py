"""
FACTURADOR — Module 4: Numbering Sequencer
Monotonic document numbers per (document type, branch).

  - per-key asyncio.Lock serializes callers inside this process
  - SequenceStore.reserve(expected, new) is a compare-and-set that
    serializes across processes; a lost race is retried with a fresh read

A reserved number is never handed out twice. Gaps (reserved but never
committed) are tolerated.
"""

import asyncio
import logging
import threading
from collections import defaultdict

from facturador.core.errors import NumberingConflict
from facturador.schemas.models import DocumentType
from facturador.services.ports import SequenceKey, SequenceStore
from facturador.utils.doc_helpers import format_document_number

logger = logging.getLogger(__name__)

MAX_RESERVE_ATTEMPTS = 5


class InMemorySequenceStore:
    """Process-local counters. Used by tests and the memory backend."""

    def __init__(self, initial: dict = None):
        self._counters: dict[SequenceKey, int] = dict(initial or {})
        self._mutex = threading.Lock()

    def last_issued(self, key: SequenceKey) -> int:
        with self._mutex:
            return self._counters.get(key, 0)

    def reserve(self, key: SequenceKey, expected_last: int, new_last: int) -> bool:
        with self._mutex:
            if self._counters.get(key, 0) != expected_last:
                return False
            self._counters[key] = new_last
            return True


class NumberingSequencer:
    def __init__(self, store: SequenceStore, max_attempts: int = MAX_RESERVE_ATTEMPTS):
        self.store = store
        self.max_attempts = max_attempts
        self._locks: dict[SequenceKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def next_number(self, document_type: DocumentType, branch_id: str) -> int:
        """Reserve and return last issued + 1."""
        key = (document_type, branch_id)
        async with self._locks[key]:
            for attempt in range(1, self.max_attempts + 1):
                last = self.store.last_issued(key)
                candidate = last + 1
                if self.store.reserve(key, last, candidate):
                    logger.info(f"Number reserved: {document_type.value}/{branch_id} → {candidate}")
                    return candidate
                logger.warning(
                    f"Sequence CAS lost for {document_type.value}/{branch_id} "
                    f"(attempt {attempt}/{self.max_attempts}), re-reading"
                )
                await asyncio.sleep(0)

        raise NumberingConflict(
            f"No se pudo reservar número para {document_type.value} en sucursal {branch_id}"
        )

    async def skip_past(self, document_type: DocumentType, branch_id: str, number: int) -> int:
        """Move the counter to at least `number` (authority reported it as used)."""
        key = (document_type, branch_id)
        async with self._locks[key]:
            for _ in range(self.max_attempts):
                last = self.store.last_issued(key)
                if last >= number:
                    return last
                if self.store.reserve(key, last, number):
                    logger.warning(f"Sequence {document_type.value}/{branch_id} resynced {last} → {number}")
                    return number
        raise NumberingConflict(
            f"No se pudo resincronizar la numeración de {document_type.value} en sucursal {branch_id}"
        )

    @staticmethod
    def format(branch_code: str, number: int) -> str:
        return format_document_number(branch_code, number)
