"""Running minimum/maximum tracker."""

import math
from typing import Iterable, Tuple


class MinMax:
    """
    Running [min, max] over the values put into it.

    NaN values are ignored. An empty tracker reports (nan, nan) and
    is_valid() is False.
    """

    __slots__ = ("_min", "_max")

    def __init__(self):
        self._min = math.inf
        self._max = -math.inf

    def put(self, value: float) -> None:
        if math.isnan(value):
            return
        if value < self._min:
            self._min = value
        if value > self._max:
            self._max = value

    def put_all(self, values: Iterable[float]) -> None:
        for value in values:
            self.put(value)

    def is_valid(self) -> bool:
        return self._min <= self._max

    @property
    def min(self) -> float:
        return self._min if self.is_valid() else math.nan

    @property
    def max(self) -> float:
        return self._max if self.is_valid() else math.nan

    def as_tuple(self) -> Tuple[float, float]:
        return (self.min, self.max)

    def __repr__(self) -> str:
        return f"MinMax({self.min}, {self.max})"
