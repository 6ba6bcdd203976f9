"""
linalg.py
~~~~~~~~~

Dense numeric primitives used by the engine.

Matrix and Vector wrap C-ordered (row-major) numpy arrays. Arithmetic
methods such as ``plus`` and ``times_vector`` return new objects; the
``*_in_place`` helpers mutate the receiver and exist so the training loop
can reuse its delta buffers instead of allocating new ones every
iteration.
"""

from typing import Sequence, Tuple, Union

import numpy as np

from nnengine.errors import ConfigurationError, DimensionMismatchError

Number = Union[int, float]


class Vector:
    """Mutable-entry 1D dense vector of floats."""

    __slots__ = ('_values',)

    def __init__(self, values: Union[Sequence[Number], np.ndarray]):
        array = np.array(values, dtype=float).reshape(-1)
        if array.size < 1:
            raise ConfigurationError("Vector must have at least 1 element.")
        self._values = array

    @classmethod
    def zero(cls, size: int) -> 'Vector':
        if size < 1:
            raise ConfigurationError("Vector must have at least 1 element.")
        return cls(np.zeros(size))

    @classmethod
    def of(cls, *values: Number) -> 'Vector':
        return cls(values)

    @classmethod
    def _wrap(cls, array: np.ndarray) -> 'Vector':
        """Adopt an already validated 1D array without copying it."""
        vector = cls.__new__(cls)
        vector._values = array
        return vector

    @property
    def values(self) -> np.ndarray:
        """Backing array. Mutating it mutates the vector."""
        return self._values

    def size(self) -> int:
        return self._values.size

    def __len__(self) -> int:
        return self._values.size

    def get(self, index: int) -> float:
        return float(self._values[index])

    def set(self, index: int, value: Number) -> None:
        self._values[index] = value

    def plus(self, other: 'Vector') -> 'Vector':
        self._check_same_size(other)
        return Vector._wrap(self._values + other._values)

    def fill(self, value: Number) -> None:
        self._values.fill(value)

    def add_in_place(self, other: 'Vector') -> None:
        self._check_same_size(other)
        self._values += other._values

    def add_scaled_in_place(self, other: 'Vector', scale: float) -> None:
        """self += scale * other"""
        self._check_same_size(other)
        self._values += scale * other._values

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self._values)))

    def copy(self) -> 'Vector':
        return Vector._wrap(self._values.copy())

    def to_array(self) -> np.ndarray:
        return self._values.copy()

    def _check_same_size(self, other: 'Vector') -> None:
        if other.size() != self.size():
            raise DimensionMismatchError(
                f"Vector sizes differ: {self.size()} != {other.size()}"
            )

    def __repr__(self) -> str:
        return f"Vector({self._values.tolist()})"


class Matrix:
    """
    Mutable-entry 2D dense matrix with fixed dimensions.

    Entries are stored row-major, so ``values`` given to the constructor
    are read as ``[row0..., row1..., ...]``.
    """

    __slots__ = ('_values',)

    def __init__(
        self,
        rows: int,
        cols: int,
        values: Union[Sequence[Number], np.ndarray, None] = None
    ):
        if rows < 1:
            raise ConfigurationError("Matrix must have at least 1 row.")
        if cols < 1:
            raise ConfigurationError("Matrix must have at least 1 column.")

        if values is None:
            self._values = np.zeros((rows, cols))
            return

        flat = np.array(values, dtype=float).reshape(-1)
        if flat.size != rows * cols:
            raise DimensionMismatchError(
                f"Expected {rows * cols} values for a {rows}x{cols} "
                f"matrix, got {flat.size}"
            )
        self._values = flat.reshape(rows, cols)

    @classmethod
    def zero(cls, rows: int, cols: int) -> 'Matrix':
        return cls(rows, cols)

    @classmethod
    def of(cls, rows: int, cols: int, *values: Number) -> 'Matrix':
        return cls(rows, cols, values)

    @classmethod
    def from_array(cls, array: np.ndarray) -> 'Matrix':
        array = np.asarray(array, dtype=float)
        if array.ndim != 2:
            raise DimensionMismatchError(
                f"Expected a 2D array, got {array.ndim} dimension(s)"
            )
        return cls(array.shape[0], array.shape[1], array)

    @property
    def values(self) -> np.ndarray:
        """Backing (rows, cols) array. Mutating it mutates the matrix."""
        return self._values

    @property
    def rows(self) -> int:
        return self._values.shape[0]

    @property
    def cols(self) -> int:
        return self._values.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    def get(self, row: int, col: int) -> float:
        return float(self._values[row, col])

    def set(self, row: int, col: int, value: Number) -> None:
        self._values[row, col] = value

    def plus(self, other: 'Matrix') -> 'Matrix':
        self._check_same_shape(other)
        return Matrix.from_array(self._values + other._values)

    def times_vector(self, vector: Vector) -> Vector:
        """Dense matrix-vector product; ``len(vector)`` must equal cols."""
        if vector.size() != self.cols:
            raise DimensionMismatchError(
                f"Cannot multiply {self.rows}x{self.cols} matrix by "
                f"vector of size {vector.size()}"
            )
        return Vector._wrap(self._values @ vector.values)

    def transpose_times_vector(self, vector: Vector) -> Vector:
        """Product of the transposed matrix with ``vector`` (size rows)."""
        if vector.size() != self.rows:
            raise DimensionMismatchError(
                f"Cannot multiply transposed {self.rows}x{self.cols} "
                f"matrix by vector of size {vector.size()}"
            )
        return Vector._wrap(self._values.T @ vector.values)

    def fill(self, value: Number) -> None:
        self._values.fill(value)

    def add_in_place(self, other: 'Matrix') -> None:
        self._check_same_shape(other)
        self._values += other._values

    def add_outer_in_place(
        self,
        column: Vector,
        row: Vector,
        scale: float = 1.0
    ) -> None:
        """self[r][c] += scale * column[r] * row[c]"""
        if column.size() != self.rows or row.size() != self.cols:
            raise DimensionMismatchError(
                f"Outer product {column.size()}x{row.size()} does not "
                f"match {self.rows}x{self.cols} matrix"
            )
        self._values += scale * np.outer(column.values, row.values)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self._values)))

    def copy(self) -> 'Matrix':
        return Matrix.from_array(self._values.copy())

    def to_array(self) -> np.ndarray:
        return self._values.copy()

    def _check_same_shape(self, other: 'Matrix') -> None:
        if other.shape != self.shape:
            raise DimensionMismatchError(
                f"Matrix shapes differ: {self.shape} != {other.shape}"
            )

    def __repr__(self) -> str:
        return f"Matrix({self.rows}x{self.cols}, {self._values.tolist()})"
