"""
nnengine package
~~~~~~~~~~~~~~~~

Trainable feed-forward neural network engine.
Contains the dense numeric primitives, activation and initializer
strategies, the dataset container and loader, the backpropagation
engine with its background fit driver, model persistence, and the API
server.
"""

from nnengine.activation import ActivationFunction, Sigmoid, Tanh, get_activation
from nnengine.dataset import Dataset
from nnengine.errors import (
    ConcurrentFitError,
    ConfigurationError,
    DimensionMismatchError,
    NeuralNetworkError,
    NumericInstabilityError,
)
from nnengine.initializers import RandomWeightInitializer, WeightInitializer
from nnengine.linalg import Matrix, Vector
from nnengine.network import CallbackListener, FitListener, FitResult, NeuralNetwork

__version__ = "1.0.0"

__all__ = [
    'ActivationFunction',
    'CallbackListener',
    'ConcurrentFitError',
    'ConfigurationError',
    'Dataset',
    'DimensionMismatchError',
    'FitListener',
    'FitResult',
    'Matrix',
    'NeuralNetwork',
    'NeuralNetworkError',
    'NumericInstabilityError',
    'RandomWeightInitializer',
    'Sigmoid',
    'Tanh',
    'Vector',
    'WeightInitializer',
    'get_activation',
]
