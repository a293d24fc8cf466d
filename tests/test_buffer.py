import numpy as np
import pytest
from cartpy._buffer import IndexBuffer, ScratchArena


def _filled(values, capacity=4):
    buf = IndexBuffer(capacity)
    buf.reserve(len(values))[:] = values
    return buf


def test_grow_keeps_prefix_and_zero_fills():
    buf = _filled([3, 5, 7], capacity=3)
    buf.grow(10)
    assert buf.capacity >= 10
    assert buf.view().tolist() == [3, 5, 7]
    assert np.all(buf.storage[3:] == 0)


def test_grow_never_shrinks():
    buf = IndexBuffer(64)
    buf.grow(2)
    assert buf.capacity == 64


def test_merge_interleaves_ascending_inputs():
    a = _filled([1, 4, 9])
    out = IndexBuffer(2)
    IndexBuffer.merge(a, np.array([2, 3, 10]), out)
    assert out.view().tolist() == [1, 2, 3, 4, 9, 10]
    assert len(out) == 6


def test_merge_with_empty_sides():
    out = IndexBuffer()
    IndexBuffer.merge(IndexBuffer(), np.array([5, 6]), out)
    assert out.view().tolist() == [5, 6]
    other = IndexBuffer()
    IndexBuffer.merge(out, np.array([], dtype=int), other)
    assert other.view().tolist() == [5, 6]


def test_merge_rejects_aliased_output():
    a = _filled([1, 2])
    with pytest.raises(ValueError):
        IndexBuffer.merge(a, np.array([3]), a)


def test_ping_pong_accumulation():
    # accumulate several disjoint lists the way a split does
    scratch = ScratchArena(capacity=1)
    acc, spare = scratch.below, scratch.swap
    for chunk in ([4, 8], [1, 9], [0, 5, 6]):
        IndexBuffer.merge(acc, np.array(chunk), spare)
        acc, spare = spare, acc
    assert acc.view().tolist() == [0, 1, 4, 5, 6, 8, 9]
