"""
network.py
~~~~~~~~~~

Fully-connected feed-forward neural network trained with backpropagation.

Supports stochastic (batch size 1), mini-batch and full-batch gradient
descent. One *iteration* is one parameter update computed from exactly
``batch_size`` samples. Samples are consumed at a cyclic index that
persists across iterations, and the dataset is reshuffled before every
iteration, so a batch may wrap around the end of the dataset.

Threading model:

- ``fit()`` runs synchronously on the calling thread. That thread owns
  the live weights, the delta accumulators and the output/error caches
  until fit() returns.
- After every applied iteration the training thread publishes an
  immutable ``WeightSnapshot``. ``predict()`` called from any other
  thread evaluates against the latest snapshot, so it never sees a
  partially updated set of weights.
- ``stop_fitting()`` may be called from any thread. Cancellation is
  checked once per iteration.
- Background drivers call ``begin_fit()`` on their own thread and
  ``complete_fit()`` on the worker, so the network is marked busy, and a
  stop request is kept, before the worker starts.
"""

import logging
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from nnengine.activation import ActivationFunction, Sigmoid
from nnengine.dataset import Dataset
from nnengine.errors import (
    ConcurrentFitError,
    ConfigurationError,
    DimensionMismatchError,
    NumericInstabilityError,
)
from nnengine.initializers import RandomWeightInitializer, WeightInitializer
from nnengine.linalg import Matrix, Vector

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.01
DEFAULT_MIN_ACCEPTABLE_ERROR = 0.05
DEFAULT_MAX_ITERATIONS = sys.maxsize
DEFAULT_BATCH_SIZE = 1

REASON_CONVERGED = 'converged'
REASON_MAX_ITERATIONS = 'max_iterations'
REASON_CANCELLED = 'cancelled'


# ============================================================================
# LISTENERS
# ============================================================================

class FitListener:
    """
    Receives progress notifications from ``NeuralNetwork.fit``.

    All methods are called synchronously on the training thread, so they
    should return quickly and hand heavy work to another thread.
    Override only the ones you need.
    """

    def on_fit_start(self) -> None:
        pass

    def on_fit_update(self, iteration: int, error: float) -> None:
        pass

    def on_fit_finish(self) -> None:
        pass

    def on_fit_error(self, exception: Exception) -> None:
        pass


class CallbackListener(FitListener):
    """Adapts plain callables to the FitListener interface."""

    def __init__(
        self,
        on_start: Optional[Callable[[], None]] = None,
        on_update: Optional[Callable[[int, float], None]] = None,
        on_finish: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ):
        self._on_start = on_start
        self._on_update = on_update
        self._on_finish = on_finish
        self._on_error = on_error

    def on_fit_start(self) -> None:
        if self._on_start is not None:
            self._on_start()

    def on_fit_update(self, iteration: int, error: float) -> None:
        if self._on_update is not None:
            self._on_update(iteration, error)

    def on_fit_finish(self) -> None:
        if self._on_finish is not None:
            self._on_finish()

    def on_fit_error(self, exception: Exception) -> None:
        if self._on_error is not None:
            self._on_error(exception)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True)
class WeightSnapshot:
    """Read-only copy of all weights and biases after an iteration."""

    weights: Tuple[Matrix, ...]
    biases: Tuple[Vector, ...]
    iteration: int


@dataclass(frozen=True)
class FitResult:
    """Outcome of a completed ``fit()`` call."""

    iterations: int
    error: Optional[float]
    reason: str

    @property
    def converged(self) -> bool:
        return self.reason == REASON_CONVERGED

    @property
    def cancelled(self) -> bool:
        return self.reason == REASON_CANCELLED


def _check_integer(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def validate_sizes(sizes: Sequence[int]) -> List[int]:
    """
    Validate a topology.

    Args:
        sizes: Neuron count per layer, input layer first

    Returns:
        The topology as a list of ints

    Raises:
        ConfigurationError: If there are fewer than 2 layers or a layer
            size is not a positive integer
    """
    if sizes is None or len(sizes) < 2:
        raise ConfigurationError(
            "Topology must have at least 2 layers (input and output)."
        )
    result = []
    for size in sizes:
        _check_integer('Layer size', size)
        if size < 1:
            raise ConfigurationError(
                f"Layer sizes must be positive, got {size}"
            )
        result.append(int(size))
    return result


# ============================================================================
# NEURAL NETWORK
# ============================================================================

class NeuralNetwork:
    """
    Feed-forward network with ``len(sizes)`` layers.

    Args:
        sizes: Neuron count per layer, e.g. ``[2, 3, 1]``
        initializer: Weight/bias initializer, called once here.
            Defaults to uniform draws in [-0.5, 0.5].
        activation: Activation strategy. Defaults to Sigmoid.
        learning_rate: Step size, > 0
        min_acceptable_error: Network error at which fitting stops, >= 0
        max_iterations: Upper bound on iterations per fit(), >= 1
        batch_size: Samples per iteration, >= 1 and <= dataset size

    Raises:
        ConfigurationError: On an invalid topology or hyperparameter
    """

    def __init__(
        self,
        sizes: Sequence[int],
        initializer: Optional[WeightInitializer] = None,
        activation: Optional[ActivationFunction] = None,
        learning_rate: float = DEFAULT_LEARNING_RATE,
        min_acceptable_error: float = DEFAULT_MIN_ACCEPTABLE_ERROR,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        batch_size: int = DEFAULT_BATCH_SIZE
    ):
        self.sizes = validate_sizes(sizes)
        self.num_layers = len(self.sizes)
        self.activation = activation if activation is not None else Sigmoid()

        self._init_runtime_state()

        self.learning_rate = learning_rate
        self.min_acceptable_error = min_acceptable_error
        self.max_iterations = max_iterations
        self.batch_size = batch_size

        if initializer is None:
            initializer = RandomWeightInitializer()
        self.weights: List[Matrix] = initializer.initialize_weights(self.sizes)
        self.biases: List[Vector] = initializer.initialize_biases(self.sizes)
        self._check_parameter_shapes()

        self._allocate_buffers()
        self._publish_snapshot(iteration=0)

    def _init_runtime_state(self) -> None:
        """Create the locks, flags and listener list (not pickled)."""
        self._listeners: List[FitListener] = []
        self._fit_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._fitting = threading.Event()
        self._stop_requested = threading.Event()
        self._fit_thread: Optional[int] = None
        self._snapshot: Optional[WeightSnapshot] = None

    def _allocate_buffers(self) -> None:
        self._delta_weights = [Matrix.zero(*w.shape) for w in self.weights]
        self._delta_biases = [Vector.zero(b.size()) for b in self.biases]
        self._outputs: List[Optional[Vector]] = [None] * self.num_layers
        self._errors: List[Optional[Vector]] = [None] * self.num_layers

    def _check_parameter_shapes(self) -> None:
        if len(self.weights) != self.num_layers - 1 or \
                len(self.biases) != self.num_layers - 1:
            raise ConfigurationError(
                "Initializer returned the wrong number of layers"
            )
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            expected = (self.sizes[i + 1], self.sizes[i])
            if w.shape != expected or b.size() != self.sizes[i + 1]:
                raise ConfigurationError(
                    f"Initializer produced weights {w.shape} and biases "
                    f"({b.size()},) for layer {i}, expected {expected} "
                    f"and ({self.sizes[i + 1]},)"
                )

    # ------------------------------------------------------------------
    # Hyperparameters
    # ------------------------------------------------------------------

    @property
    def learning_rate(self) -> float:
        return self._learning_rate

    @learning_rate.setter
    def learning_rate(self, value: float) -> None:
        self._ensure_not_fitting()
        if not value > 0:
            raise ConfigurationError(
                f"Learning rate must be positive, got {value}"
            )
        self._learning_rate = float(value)

    @property
    def min_acceptable_error(self) -> float:
        return self._min_acceptable_error

    @min_acceptable_error.setter
    def min_acceptable_error(self, value: float) -> None:
        self._ensure_not_fitting()
        if not value >= 0:
            raise ConfigurationError(
                f"Minimum acceptable error must be non-negative, got {value}"
            )
        self._min_acceptable_error = float(value)

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._ensure_not_fitting()
        _check_integer('Maximum number of iterations', value)
        if value < 1:
            raise ConfigurationError(
                f"Maximum number of iterations must be at least 1, "
                f"got {value}"
            )
        self._max_iterations = int(value)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value: int) -> None:
        self._ensure_not_fitting()
        _check_integer('Batch size', value)
        if value < 1:
            raise ConfigurationError(
                f"Batch size must be at least 1, got {value}"
            )
        self._batch_size = int(value)

    def _ensure_not_fitting(self) -> None:
        if self._fitting.is_set():
            raise ConcurrentFitError(
                "Cannot change hyperparameters while the network is "
                "being fitted"
            )

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    @property
    def input_neuron_count(self) -> int:
        return self.sizes[0]

    @property
    def output_neuron_count(self) -> int:
        return self.sizes[-1]

    def snapshot(self) -> WeightSnapshot:
        """Latest published weights; safe to read from any thread."""
        with self._snapshot_lock:
            return self._snapshot

    def get_weights(self) -> List[np.ndarray]:
        return [w.to_array() for w in self.snapshot().weights]

    def get_biases(self) -> List[np.ndarray]:
        return [b.to_array() for b in self.snapshot().biases]

    def is_being_fitted(self) -> bool:
        return self._fitting.is_set()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: FitListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, method: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                logger.exception(f"Listener {listener!r} failed in {method}: {e}")

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, sample: Sequence[float]) -> np.ndarray:
        """
        Run a forward pass.

        Args:
            sample: Input vector of length ``sizes[0]``

        Returns:
            Output layer activations as a new numpy array

        Raises:
            DimensionMismatchError: If the sample has the wrong length
            NumericInstabilityError: If a non-finite value is produced
        """
        x = self._as_input(sample)
        snapshot = self.snapshot()
        outputs = self._propagate(x, snapshot.weights, snapshot.biases)
        if self._owns_caches():
            self._outputs = outputs
        return outputs[-1].to_array()

    def predict_class(self, sample: Sequence[float]) -> int:
        """Index of the most activated output neuron."""
        return int(np.argmax(self.predict(sample)))

    def _owns_caches(self) -> bool:
        return not self._fitting.is_set() or \
            self._fit_thread == threading.get_ident()

    def _as_input(self, sample: Sequence[float]) -> Vector:
        x = np.array(sample, dtype=float).reshape(-1)
        if x.size != self.sizes[0]:
            raise DimensionMismatchError(
                f"Sample has {x.size} value(s), network expects "
                f"{self.sizes[0]}"
            )
        return Vector(x)

    def _propagate(
        self,
        x: Vector,
        weights: Sequence[Matrix],
        biases: Sequence[Vector]
    ) -> List[Vector]:
        """Forward pass returning the activation of every layer."""
        if not x.is_finite():
            raise NumericInstabilityError("Sample contains NaN or infinity")

        outputs = [x]
        for layer, (w, b) in enumerate(zip(weights, biases)):
            x = self.activation.apply(w.times_vector(x).plus(b))
            if not x.is_finite():
                raise NumericInstabilityError(
                    f"Non-finite activation in layer {layer + 1}"
                )
            outputs.append(x)
        return outputs

    # ------------------------------------------------------------------
    # Error measures
    # ------------------------------------------------------------------

    def calculate_network_error(self, dataset: Dataset) -> float:
        """
        Squared residual over the whole dataset scaled by ``1/(2N)``.

        Args:
            dataset: Dataset whose widths match the topology

        Returns:
            float: The network error
        """
        total = 0.0
        for x, y in dataset:
            total += self.calculate_sample_error(y, self.predict(x))
        return total / (2 * dataset.size())

    @staticmethod
    def calculate_sample_error(
        y: Sequence[float],
        prediction: Sequence[float]
    ) -> float:
        delta = np.asarray(y, dtype=float) - np.asarray(prediction, dtype=float)
        return float(np.dot(delta, delta))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def stop_fitting(self) -> None:
        """Request cancellation; honoured at the next iteration boundary."""
        self._stop_requested.set()

    def fit(self, dataset: Dataset) -> FitResult:
        """
        Train the network on ``dataset`` until the error is acceptable,
        the iteration limit is reached, or stop_fitting() is called.

        Args:
            dataset: Training samples; shuffled in place every iteration

        Returns:
            FitResult with the number of iterations run, the last network
            error and the reason fitting stopped

        Raises:
            ConcurrentFitError: If this network is already being fitted
            DimensionMismatchError: If a sample width does not match the
                topology
            ConfigurationError: If batch_size exceeds the dataset size
            NumericInstabilityError: If an iteration produced NaN or
                infinity; that iteration's updates are not applied
        """
        self.begin_fit(dataset)
        return self.complete_fit(dataset)

    def begin_fit(self, dataset: Dataset) -> None:
        """
        Validate ``dataset`` and mark the network as being fitted.

        Drivers that train on another thread call this on their own
        thread, then ``complete_fit`` on the worker. From here on
        ``is_being_fitted()`` is True, hyperparameters are locked and a
        ``stop_fitting()`` request is kept for the coming fit.

        Raises:
            ConcurrentFitError: If this network is already being fitted
            DimensionMismatchError: If a sample width does not match the
                topology
            ConfigurationError: If batch_size exceeds the dataset size
        """
        if not self._fit_lock.acquire(blocking=False):
            raise ConcurrentFitError("Network is already being fitted")

        try:
            self.validate_dataset(dataset)
        except Exception:
            self._fit_lock.release()
            raise
        self._stop_requested.clear()
        self._fitting.set()

    def complete_fit(self, dataset: Dataset) -> FitResult:
        """Run a fit started with ``begin_fit`` on the calling thread."""
        if not self._fitting.is_set():
            raise RuntimeError("begin_fit() must be called before complete_fit()")

        self._fit_thread = threading.get_ident()
        try:
            return self._run_fit(dataset)
        finally:
            self._fitting.clear()
            self._fit_thread = None
            self._notify('on_fit_finish')
            self._fit_lock.release()

    def validate_dataset(self, dataset: Dataset) -> None:
        n_in, n_out = self.sizes[0], self.sizes[-1]
        for k, (x, y) in enumerate(dataset):
            if x.size != n_in:
                raise DimensionMismatchError(
                    f"Input {k} has {x.size} value(s), network expects {n_in}"
                )
            if y.size != n_out:
                raise DimensionMismatchError(
                    f"Target {k} has {y.size} value(s), network expects "
                    f"{n_out}"
                )
        if self.batch_size > dataset.size():
            raise ConfigurationError(
                f"Batch size of {self.batch_size} exceeds the maximum value "
                f"of {dataset.size()}."
            )

    def _run_fit(self, dataset: Dataset) -> FitResult:
        n = dataset.size()
        logger.info(
            f"Fitting network {self.sizes} on {n} samples: "
            f"batch_size={self.batch_size}, lr={self.learning_rate}, "
            f"min_error={self.min_acceptable_error}, "
            f"max_iterations={self.max_iterations}"
        )
        self._notify('on_fit_start')

        sample_index = 0
        iteration = 0
        error: Optional[float] = None
        reason = REASON_CANCELLED

        while not self._stop_requested.is_set():
            iteration += 1
            try:
                dataset.shuffle()
                self._reset_deltas()
                for _ in range(self.batch_size):
                    x, y = dataset[sample_index]
                    self._accumulate_sample(x, y)
                    sample_index = (sample_index + 1) % n
                self._apply_deltas(iteration)
                error = self.calculate_network_error(dataset)
            except NumericInstabilityError as e:
                logger.error(f"Iteration {iteration} aborted: {e}")
                self._notify('on_fit_error', e)
                raise

            logger.debug(f"Iteration {iteration}: error={error:.6f}")
            self._notify('on_fit_update', iteration, error)

            if error <= self.min_acceptable_error:
                reason = REASON_CONVERGED
                break
            if iteration >= self.max_iterations:
                reason = REASON_MAX_ITERATIONS
                break

        logger.info(
            f"Fitting finished after {iteration} iteration(s): "
            f"reason={reason}, error={error}"
        )
        return FitResult(iterations=iteration, error=error, reason=reason)

    def _reset_deltas(self) -> None:
        for dw, db in zip(self._delta_weights, self._delta_biases):
            dw.fill(0.0)
            db.fill(0.0)

    def _accumulate_sample(self, x: np.ndarray, y: np.ndarray) -> None:
        """Backpropagate one sample into the delta accumulators."""
        outputs = self._propagate(Vector(x), self.weights, self.biases)
        self._outputs = outputs
        prediction = outputs[-1]

        last = self.num_layers - 1
        residual = Vector(y - prediction.values)
        self._errors[last] = Vector(
            self.activation.derivative(prediction).values * residual.values
        )

        for layer in range(last - 1, 0, -1):
            propagated = self.weights[layer].transpose_times_vector(
                self._errors[layer + 1]
            )
            self._errors[layer] = Vector(
                self.activation.derivative(outputs[layer]).values
                * propagated.values
            )

        for layer in range(last):
            self._delta_weights[layer].add_outer_in_place(
                self._errors[layer + 1], outputs[layer], self.learning_rate
            )
            self._delta_biases[layer].add_scaled_in_place(
                self._errors[layer + 1], self.learning_rate
            )

    def _apply_deltas(self, iteration: int) -> None:
        """Add the accumulated deltas to the live weights, all or nothing."""
        new_weights = [w.plus(dw) for w, dw in zip(self.weights, self._delta_weights)]
        new_biases = [b.plus(db) for b, db in zip(self.biases, self._delta_biases)]
        for layer, (w, b) in enumerate(zip(new_weights, new_biases)):
            if not (w.is_finite() and b.is_finite()):
                raise NumericInstabilityError(
                    f"Update produced non-finite parameters in layer {layer}"
                )

        for w, new_w in zip(self.weights, new_weights):
            w.values[...] = new_w.values
        for b, new_b in zip(self.biases, new_biases):
            b.values[...] = new_b.values
        self._publish_snapshot(iteration)

    def _publish_snapshot(self, iteration: int) -> None:
        snapshot = WeightSnapshot(
            weights=tuple(_frozen(w.copy()) for w in self.weights),
            biases=tuple(_frozen(b.copy()) for b in self.biases),
            iteration=iteration,
        )
        with self._snapshot_lock:
            self._snapshot = snapshot

    # ------------------------------------------------------------------
    # Pickling
    # ------------------------------------------------------------------

    def __getstate__(self) -> Dict[str, Any]:
        state = {
            'sizes': self.sizes,
            'activation': self.activation,
            'weights': [w.to_array() for w in self.weights],
            'biases': [b.to_array() for b in self.biases],
            'learning_rate': self._learning_rate,
            'min_acceptable_error': self._min_acceptable_error,
            'max_iterations': self._max_iterations,
            'batch_size': self._batch_size,
        }
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.sizes = list(state['sizes'])
        self.num_layers = len(self.sizes)
        self.activation = state['activation']
        self._init_runtime_state()
        self._learning_rate = state['learning_rate']
        self._min_acceptable_error = state['min_acceptable_error']
        self._max_iterations = state['max_iterations']
        self._batch_size = state['batch_size']
        self.weights = [Matrix.from_array(w) for w in state['weights']]
        self.biases = [Vector(b) for b in state['biases']]
        self._allocate_buffers()
        self._publish_snapshot(iteration=0)

    def __repr__(self) -> str:
        return f"NeuralNetwork({self.sizes}, activation={self.activation!r})"


def _frozen(item):
    item.values.setflags(write=False)
    return item
