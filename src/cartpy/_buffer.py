"""
cartpy._buffer
==============

Reusable integer scratch memory for split materialisation.

An :class:`IndexBuffer` is a growable ``intp`` array with an explicit logical
``size``.  Storage only ever grows, so the same buffers can be reused across
every split performed by one worker.  A :class:`ScratchArena` bundles the
three buffers a split needs; each worker task owns exactly one arena.
"""

from __future__ import annotations

import numpy as np

DEFAULT_SIZE = 1000


class IndexBuffer:
    """Growable array of example indices with a logical length.

    Parameters
    ----------
    capacity : int, default=1000
        Initial storage length.

    Attributes
    ----------
    storage : ndarray of intp
        Backing array.  Regions past ``size`` are unspecified, except that
        freshly grown regions are zero filled.
    size : int
        Number of live elements at the front of ``storage``.
    """

    def __init__(self, capacity: int = DEFAULT_SIZE):
        self.storage = np.zeros(max(int(capacity), 1), dtype=np.intp)
        self.size = 0

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"IndexBuffer(size={self.size}, capacity={self.storage.shape[0]})"

    @property
    def capacity(self) -> int:
        return int(self.storage.shape[0])

    def grow(self, min_capacity: int) -> None:
        """Ensure ``storage`` holds at least ``min_capacity`` elements.

        The live prefix is preserved and new space is zero filled.
        """
        cap = self.capacity
        if min_capacity <= cap:
            return
        new_cap = max(int(min_capacity), 2 * cap)
        grown = np.zeros(new_cap, dtype=np.intp)
        grown[:self.size] = self.storage[:self.size]
        self.storage = grown

    def reserve(self, n: int) -> np.ndarray:
        """Set the logical size to ``n`` and return the live view."""
        self.grow(n)
        self.size = int(n)
        return self.storage[:n]

    def view(self) -> np.ndarray:
        """Live elements, as a view into ``storage``."""
        return self.storage[:self.size]

    def clear(self) -> None:
        self.size = 0

    @staticmethod
    def merge(a: "IndexBuffer", b, out: "IndexBuffer") -> None:
        """Merge the ascending ``a`` and ascending ``b`` into ``out``.

        ``a`` and ``b`` must be disjoint; duplicates are not removed.  Each
        element is placed at its own position plus the number of elements of
        the other input that precede it, which is what a two-pointer merge
        computes one step at a time.

        Raises
        ------
        ValueError
            If ``out`` is ``a``; the merge would overwrite its own input.
        """
        if out is a:
            raise ValueError("merge output must not alias its first input")
        left = a.view()
        right = np.asarray(b, dtype=np.intp)
        n = left.shape[0] + right.shape[0]
        out.grow(n)
        target = out.storage
        if left.shape[0]:
            pos = np.searchsorted(right, left)
            pos += np.arange(left.shape[0], dtype=np.intp)
            target[pos] = left
        if right.shape[0]:
            pos = np.searchsorted(left, right)
            pos += np.arange(right.shape[0], dtype=np.intp)
            target[pos] = right
        out.size = n


class ScratchArena:
    """The three buffers one worker needs to materialise splits.

    ``below`` and ``swap`` are ping-ponged while the left partition is
    accumulated; whichever is not holding the result is then used to gather
    column indices, and ``marks`` is a zero-filled membership table indexed
    by example id.
    """

    def __init__(self, capacity: int = DEFAULT_SIZE):
        self.below = IndexBuffer(capacity)
        self.swap = IndexBuffer(capacity)
        self.marks = IndexBuffer(capacity)

    def reset(self) -> None:
        self.below.clear()
        self.swap.clear()
