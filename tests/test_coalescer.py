import asyncio

import pytest

from services.annotations import PositionCoalescer
from shared.errors import DocumentNotFoundError, TransientStoreError
from shared.models import Position


class RecordingWriter:
    def __init__(self, error: Exception | None = None) -> None:
        self.writes: list[tuple[str, Position]] = []
        self.error = error

    async def __call__(self, key: str, position: Position) -> None:
        if self.error is not None:
            raise self.error
        self.writes.append((key, position))


@pytest.mark.asyncio
async def test_latest_position_wins_within_interval() -> None:
    writer = RecordingWriter()
    coalescer = PositionCoalescer(writer, interval=0.01)

    coalescer.submit("g1", Position(x=1, y=1))
    coalescer.submit("g1", Position(x=2, y=2))
    coalescer.submit("g2", Position(x=5, y=5))
    assert coalescer.pending("g1") == Position(x=2, y=2)
    assert coalescer.pending_count == 2

    await asyncio.sleep(0.05)
    assert sorted(writer.writes, key=lambda write: write[0]) == [
        ("g1", Position(x=2, y=2)),
        ("g2", Position(x=5, y=5)),
    ]


@pytest.mark.asyncio
async def test_flush_all_writes_immediately() -> None:
    writer = RecordingWriter()
    coalescer = PositionCoalescer(writer, interval=10)
    coalescer.submit("g1", Position(x=3, y=4))

    await coalescer.close()
    assert writer.writes == [("g1", Position(x=3, y=4))]
    assert coalescer.pending_count == 0


@pytest.mark.asyncio
async def test_discard_drops_pending_position() -> None:
    writer = RecordingWriter()
    coalescer = PositionCoalescer(writer, interval=0.01)
    coalescer.submit("g1", Position(x=3, y=4))
    coalescer.discard("g1")

    await asyncio.sleep(0.03)
    assert writer.writes == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [DocumentNotFoundError("groups/g1"), TransientStoreError("offline")])
async def test_write_errors_are_logged_not_raised(error) -> None:
    coalescer = PositionCoalescer(RecordingWriter(error), interval=10)
    coalescer.submit("g1", Position(x=1, y=1))
    await coalescer.flush("g1")
    assert coalescer.pending("g1") is None
    await coalescer.close()
