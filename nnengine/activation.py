"""
activation.py
~~~~~~~~~~~~~

Activation strategies for the neural network engine.

Each strategy maps pre-activations to activations and also knows its own
derivative, expressed in terms of the activation *output* ``y``. The
backward pass calls ``derivative`` on the configured strategy, so a
network built with Tanh backpropagates with ``1 - y**2`` rather than the
logistic ``y * (1 - y)``.
"""

from abc import ABC, abstractmethod
from typing import Dict, Type, Union, overload

import numpy as np

from nnengine.errors import ConfigurationError
from nnengine.linalg import Vector


class ActivationFunction(ABC):
    """Elementwise activation with a matching derivative."""

    name: str = ''

    @overload
    def apply(self, value: Vector) -> Vector: ...

    @overload
    def apply(self, value: float) -> float: ...

    def apply(self, value: Union[Vector, float]) -> Union[Vector, float]:
        """
        Apply the activation to a vector (elementwise) or a scalar.

        Args:
            value: Vector of pre-activations or a single number

        Returns:
            A new Vector, or a float for scalar input
        """
        if isinstance(value, Vector):
            return Vector(self._apply(value.values))
        return float(self._apply(np.float64(value)))

    def derivative(self, output: Vector) -> Vector:
        """Derivative of the activation evaluated at output ``y``."""
        return Vector(self._derivative(output.values))

    @abstractmethod
    def _apply(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def _derivative(self, y: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Sigmoid(ActivationFunction):
    """Logistic sigmoid, 1 / (1 + e^-x)."""

    name = 'sigmoid'

    def _apply(self, x: np.ndarray) -> np.ndarray:
        # exp overflows to inf for very negative x, which still yields 0.0
        with np.errstate(over='ignore'):
            return 1.0 / (1.0 + np.exp(-x))

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        return y * (1.0 - y)


class Tanh(ActivationFunction):
    """Hyperbolic tangent."""

    name = 'tanh'

    def _apply(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(x)

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        return 1.0 - y * y


ACTIVATIONS: Dict[str, Type[ActivationFunction]] = {
    Sigmoid.name: Sigmoid,
    Tanh.name: Tanh,
}


def get_activation(name: str) -> ActivationFunction:
    """
    Resolve an activation strategy by name.

    Args:
        name: Case-insensitive strategy name ('sigmoid' or 'tanh')

    Returns:
        ActivationFunction instance

    Raises:
        ConfigurationError: If the name is unknown
    """
    key = str(name).strip().lower()
    if key not in ACTIVATIONS:
        raise ConfigurationError(
            f"Unknown activation '{name}'. "
            f"Expected one of: {', '.join(sorted(ACTIVATIONS))}"
        )
    return ACTIVATIONS[key]()
