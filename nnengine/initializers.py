"""
initializers.py
~~~~~~~~~~~~~~~

Weight and bias initialization strategies.

An initializer is called exactly once, from the NeuralNetwork
constructor, and returns one weight Matrix of shape
``(sizes[i+1], sizes[i])`` and one bias Vector of length ``sizes[i+1]``
per layer transition.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from nnengine.errors import ConfigurationError
from nnengine.linalg import Matrix, Vector

DEFAULT_LOWER_BOUND = -0.5
DEFAULT_UPPER_BOUND = 0.5


class WeightInitializer(ABC):
    """Fills per-layer weights and biases for a given topology."""

    @abstractmethod
    def initialize_weights(self, sizes: Sequence[int]) -> List[Matrix]:
        raise NotImplementedError

    @abstractmethod
    def initialize_biases(self, sizes: Sequence[int]) -> List[Vector]:
        raise NotImplementedError


class RandomWeightInitializer(WeightInitializer):
    """
    Independent uniform draws in ``[lower_bound, upper_bound]``.

    Args:
        lower_bound: Smallest value that may be drawn
        upper_bound: Largest value that may be drawn
        seed: Optional seed for reproducible initialization

    Raises:
        ConfigurationError: If lower_bound > upper_bound
    """

    def __init__(
        self,
        lower_bound: float = DEFAULT_LOWER_BOUND,
        upper_bound: float = DEFAULT_UPPER_BOUND,
        seed: Optional[int] = None
    ):
        if lower_bound > upper_bound:
            raise ConfigurationError(
                f"Lower bound cannot be greater than upper bound "
                f"({lower_bound} > {upper_bound})"
            )
        self.lower_bound = float(lower_bound)
        self.upper_bound = float(upper_bound)
        self._rng = np.random.default_rng(seed)

    def initialize_weights(self, sizes: Sequence[int]) -> List[Matrix]:
        return [
            Matrix.from_array(self._draw((rows, cols)))
            for cols, rows in zip(sizes[:-1], sizes[1:])
        ]

    def initialize_biases(self, sizes: Sequence[int]) -> List[Vector]:
        return [Vector(self._draw(n)) for n in sizes[1:]]

    def _draw(self, shape) -> np.ndarray:
        return self._rng.uniform(self.lower_bound, self.upper_bound, shape)

    def __repr__(self) -> str:
        return (
            f"RandomWeightInitializer({self.lower_bound}, "
            f"{self.upper_bound})"
        )
