"""
Divide-and-conquer pixel range tasks run on a worker pool.
"""

from __future__ import annotations

import concurrent.futures

from .config import PIXEL_TASK_THRESHOLD


class PixelRangeTask:
    """
    A half-open range of pixel indices `[start, end)` of a raster. A range
    larger than the threshold splits in two halves, recursively, until every
    leaf is small enough to process directly.
    """

    def __init__(self, start: int, end: int, threshold: int = PIXEL_TASK_THRESHOLD) -> None:
        if start < 0 or end < start:
            raise ValueError(f'invalid pixel range [{start}, {end})')
        if threshold <= 0:
            raise ValueError(f'task threshold must be positive, got {threshold}')
        self.start = start
        self.end = end
        self.threshold = threshold

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.start}, {self.end})'

    def __len__(self) -> int:
        return self.end - self.start

    def split(self) -> tuple:
        mid = (self.start + self.end) // 2
        return (PixelRangeTask(self.start, mid, self.threshold),
                PixelRangeTask(mid, self.end, self.threshold))

    def leaves(self) -> list:
        """
        The ranges at or under the threshold that together cover this range.
        """
        if len(self) <= self.threshold:
            return [self] if len(self) > 0 else []
        left, right = self.split()
        return left.leaves() + right.leaves()


def run_pixel_tasks(
    total: int,
    func: callable,
    pool: concurrent.futures.Executor | None = None,
    threshold: int = PIXEL_TASK_THRESHOLD) -> None:
    """
    Process the pixel indices `[0, total)` by calling `func(start, end)` on
    every leaf range. Blocks until all leaves are done, and raises the first
    error raised by any of them.

    Args:
        total (int): Number of pixels.
        func (callable): Leaf function taking a start and an end index.
        pool (Executor, optional): Pool the leaves run on. If None, or when
            the range is a single leaf, they run in the calling thread.
        threshold (int, optional): Leaf size limit.
    """
    leaves = PixelRangeTask(0, total, threshold).leaves()
    if pool is None or len(leaves) <= 1:
        for leaf in leaves:
            func(leaf.start, leaf.end)
        return

    futures = [pool.submit(func, leaf.start, leaf.end) for leaf in leaves]
    try:
        for future in concurrent.futures.as_completed(futures):
            future.result()
    except BaseException:
        # drop the pending leaves and let the running ones finish before raising
        for future in futures:
            future.cancel()
        concurrent.futures.wait(futures)
        raise
