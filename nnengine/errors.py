"""
errors.py
~~~~~~~~~

Exception hierarchy raised by the neural network engine.

Configuration and dimension errors are raised synchronously, before any
state is mutated. NumericInstabilityError aborts only the iteration that
produced the non-finite value.
"""


class NeuralNetworkError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NeuralNetworkError, ValueError):
    """Invalid topology, hyperparameter, batch size or initializer bounds."""


class DimensionMismatchError(NeuralNetworkError, ValueError):
    """A sample or operand does not match the expected width."""


class ConcurrentFitError(NeuralNetworkError, RuntimeError):
    """fit() was called on a network that is already being fitted."""


class NumericInstabilityError(NeuralNetworkError, ArithmeticError):
    """A NaN or infinite value was produced during propagation."""
