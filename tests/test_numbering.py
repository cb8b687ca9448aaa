"""
FACTURADOR — Numbering sequencer tests.
"""

import asyncio

import pytest

from facturador.core.errors import NumberingConflict
from facturador.modules.numbering import InMemorySequenceStore, NumberingSequencer
from facturador.schemas.models import DocumentType


class FlakyStore(InMemorySequenceStore):
    """Loses the first `losses` compare-and-set races, as if another process won them."""

    def __init__(self, losses: int):
        super().__init__()
        self.losses = losses
        self.reserve_calls = 0

    def reserve(self, key, expected_last, new_last):
        self.reserve_calls += 1
        if self.losses > 0:
            self.losses -= 1
            # the other process took the number
            super().reserve(key, expected_last, new_last)
            return False
        return super().reserve(key, expected_last, new_last)


class TestInMemorySequenceStore:
    def test_compare_and_set(self):
        store = InMemorySequenceStore()
        key = (DocumentType.FACTURA_B, "suc-1")
        assert store.last_issued(key) == 0
        assert store.reserve(key, 0, 1) is True
        assert store.reserve(key, 0, 1) is False
        assert store.last_issued(key) == 1


class TestNumberingSequencer:
    @pytest.mark.asyncio
    async def test_first_number_is_one(self, sequencer):
        assert await sequencer.next_number(DocumentType.FACTURA_B, "suc-1") == 1
        assert await sequencer.next_number(DocumentType.FACTURA_B, "suc-1") == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_distinct_numbers(self, sequencer):
        numbers = await asyncio.gather(
            *[sequencer.next_number(DocumentType.FACTURA_B, "suc-1") for _ in range(25)]
        )
        assert sorted(numbers) == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_sequences_are_independent(self, sequencer):
        await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")
        await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")
        assert await sequencer.next_number(DocumentType.FACTURA_A, "suc-1") == 1
        assert await sequencer.next_number(DocumentType.FACTURA_B, "suc-2") == 1
        assert await sequencer.next_number(DocumentType.PRESUPUESTO, "suc-1") == 1

    @pytest.mark.asyncio
    async def test_lost_race_is_retried(self):
        store = FlakyStore(losses=2)
        sequencer = NumberingSequencer(store)
        number = await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")
        # numbers 1 and 2 went to the other process
        assert number == 3
        assert store.reserve_calls == 3

    @pytest.mark.asyncio
    async def test_conflict_after_exhausting_attempts(self):
        sequencer = NumberingSequencer(FlakyStore(losses=10), max_attempts=3)
        with pytest.raises(NumberingConflict):
            await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")

    @pytest.mark.asyncio
    async def test_skip_past(self, sequencer):
        await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")
        assert await sequencer.skip_past(DocumentType.FACTURA_B, "suc-1", 40) == 40
        assert await sequencer.next_number(DocumentType.FACTURA_B, "suc-1") == 41

    @pytest.mark.asyncio
    async def test_skip_past_never_moves_backwards(self, sequencer):
        for _ in range(5):
            await sequencer.next_number(DocumentType.FACTURA_B, "suc-1")
        assert await sequencer.skip_past(DocumentType.FACTURA_B, "suc-1", 2) == 5
        assert await sequencer.next_number(DocumentType.FACTURA_B, "suc-1") == 6

    def test_format(self):
        assert NumberingSequencer.format("2", 15) == "0002-00000015"
