"""Property-based tests for the write-through fan-out."""

from __future__ import annotations

import asyncio

from hypothesis import given, strategies as st

from fileproxy.cache.fanout import BranchAborted, FanOut


chunk_lists = st.lists(st.binary(min_size=1, max_size=32), max_size=20)


async def _source(chunks: list[bytes]):
    for chunk in chunks:
        yield chunk


async def _drain_both(chunks: list[bytes], limit: int) -> tuple[list[bytes], list[bytes] | None]:
    fanout = FanOut(_source(chunks), max_buffered_chunks=limit)
    branch = fanout.branch()
    primary = [chunk async for chunk in fanout.primary()]
    try:
        side = [chunk async for chunk in branch]
    except BranchAborted:
        side = None
    return primary, side


@given(chunk_lists, st.integers(min_value=1, max_value=32))
def test_primary_always_receives_every_chunk(chunks: list[bytes], limit: int) -> None:
    primary, _ = asyncio.run(_drain_both(chunks, limit))
    assert primary == chunks


@given(chunk_lists, st.integers(min_value=1, max_value=32))
def test_branch_is_complete_copy_or_aborted(chunks: list[bytes], limit: int) -> None:
    _, side = asyncio.run(_drain_both(chunks, limit))
    if len(chunks) <= limit:
        assert side == chunks
    else:
        assert side is None
