"""
dataset.py
~~~~~~~~~~

In-memory container of paired input/target vectors.

A Dataset only guarantees that inputs and targets are paired one to one.
Checking the sample widths against a network topology is the engine's
job (see ``NeuralNetwork.fit``).
"""

import logging
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from nnengine.errors import ConfigurationError, DimensionMismatchError

logger = logging.getLogger(__name__)


class Dataset:
    """
    Parallel sequences of input vectors ``X`` and target vectors ``Y``.

    Args:
        X: Input vectors
        Y: Target vectors, one per input
        seed: Seed for the generator used by shuffle() and expand()

    Raises:
        ConfigurationError: If the dataset is empty
        DimensionMismatchError: If ``len(X) != len(Y)``
    """

    def __init__(
        self,
        X: Sequence[Sequence[float]],
        Y: Sequence[Sequence[float]],
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ):
        if len(X) != len(Y):
            raise DimensionMismatchError(
                f"Number of inputs and targets differ: {len(X)} != {len(Y)}"
            )
        if len(X) == 0:
            raise ConfigurationError(
                "Dataset must contain at least one entry."
            )

        self._X: List[np.ndarray] = [_as_row(x) for x in X]
        self._Y: List[np.ndarray] = [_as_row(y) for y in Y]
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def size(self) -> int:
        return len(self._X)

    def __len__(self) -> int:
        return len(self._X)

    @property
    def input_dimension(self) -> int:
        return self._X[0].size

    @property
    def output_dimension(self) -> int:
        return self._Y[0].size

    @property
    def inputs(self) -> List[np.ndarray]:
        return list(self._X)

    @property
    def targets(self) -> List[np.ndarray]:
        return list(self._Y)

    def get_x(self, index: int) -> np.ndarray:
        return self._X[index]

    def get_y(self, index: int) -> np.ndarray:
        return self._Y[index]

    def __getitem__(self, index: int) -> Tuple[np.ndarray, np.ndarray]:
        return self._X[index], self._Y[index]

    def __iter__(self) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        return iter(zip(self._X, self._Y))

    def shuffle(self) -> None:
        """
        Permute the samples in place.

        Fisher-Yates over the sample indices; each input moves together
        with its target.
        """
        for i in range(len(self._X) - 1, 0, -1):
            j = int(self._rng.integers(i + 1))
            self._X[i], self._X[j] = self._X[j], self._X[i]
            self._Y[i], self._Y[j] = self._Y[j], self._Y[i]

    def expand(self, additional_permutations_per_sample: int) -> 'Dataset':
        """
        Return a larger dataset augmented with permuted copies of inputs.

        For every sample the result holds the original pair followed by
        ``additional_permutations_per_sample`` pairs whose input is a
        random permutation of the original input's elements and whose
        target is the original target. This dataset is left unchanged.

        Args:
            additional_permutations_per_sample: Extra rows per sample

        Returns:
            Dataset of size ``N * (additional_permutations_per_sample + 1)``

        Raises:
            ConfigurationError: If the argument is negative
        """
        k = additional_permutations_per_sample
        if k < 0:
            raise ConfigurationError(
                "Additional permutations per sample cannot be a negative "
                f"number, got {k}"
            )

        expanded_X: List[np.ndarray] = []
        expanded_Y: List[np.ndarray] = []
        for x, y in zip(self._X, self._Y):
            expanded_X.append(x)
            expanded_Y.append(y)
            for _ in range(k):
                expanded_X.append(self._rng.permutation(x))
                expanded_Y.append(y)

        logger.debug(
            f"Expanded dataset from {len(self._X)} to {len(expanded_X)} "
            f"samples ({k} permutation(s) per sample)"
        )
        return Dataset(expanded_X, expanded_Y, rng=self._rng)

    def __repr__(self) -> str:
        return (
            f"Dataset(size={self.size()}, "
            f"input_dimension={self.input_dimension}, "
            f"output_dimension={self.output_dimension})"
        )


def _as_row(values: Sequence[float]) -> np.ndarray:
    return np.array(values, dtype=float).reshape(-1)
