"""
training.py
~~~~~~~~~~~

Runs ``NeuralNetwork.fit`` on a background thread.

Progress is delivered as FitEvent objects on a queue, so the consumer
(a UI loop, a CLI printer, a test) reads them on its own thread and the
training thread never waits on slow observers.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

from nnengine.dataset import Dataset
from nnengine.errors import NumericInstabilityError
from nnengine.network import FitListener, FitResult, NeuralNetwork

logger = logging.getLogger(__name__)

EVENT_START = 'start'
EVENT_UPDATE = 'update'
EVENT_FINISH = 'finish'
EVENT_ERROR = 'error'


@dataclass(frozen=True)
class FitEvent:
    kind: str
    iteration: Optional[int] = None
    error: Optional[float] = None
    exception: Optional[BaseException] = None


class QueueListener(FitListener):
    """Forwards fit notifications to a queue."""

    def __init__(self, events: 'queue.Queue[FitEvent]'):
        self.events = events
        self.finished = False

    def on_fit_start(self) -> None:
        self.events.put(FitEvent(EVENT_START))

    def on_fit_update(self, iteration: int, error: float) -> None:
        self.events.put(FitEvent(EVENT_UPDATE, iteration=iteration, error=error))

    def on_fit_finish(self) -> None:
        self.finished = True
        self.events.put(FitEvent(EVENT_FINISH))

    def on_fit_error(self, exception: Exception) -> None:
        self.events.put(FitEvent(EVENT_ERROR, exception=exception))


class BackgroundFit:
    """
    Fit a network on a daemon thread.

    Configuration and dimension problems are raised by ``start()`` on the
    caller's thread; failures during training are reported as an
    ``error`` event and stored in ``self.error``.

    Example:
        >>> job = BackgroundFit(net, dataset).start()
        >>> for event in job.iter_events():
        ...     print(event.iteration, event.error)
    """

    def __init__(self, network: NeuralNetwork, dataset: Dataset):
        self.network = network
        self.dataset = dataset
        self.events: 'queue.Queue[FitEvent]' = queue.Queue()
        self.result: Optional[FitResult] = None
        self.error: Optional[BaseException] = None
        self._listener = QueueListener(self.events)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'BackgroundFit':
        """
        Validate and launch training.

        Raises:
            ConcurrentFitError: If the network is already being fitted
            DimensionMismatchError: If the dataset does not fit the topology
            ConfigurationError: If the batch size exceeds the dataset size
            RuntimeError: If this job was already started
        """
        if self._thread is not None:
            raise RuntimeError("BackgroundFit can only be started once")

        self.network.begin_fit(self.dataset)

        self.network.add_listener(self._listener)
        self._thread = threading.Thread(
            target=self._run, name='nnengine-fit', daemon=True
        )
        self._thread.start()
        logger.info(f"Started background fit of network {self.network.sizes}")
        return self

    def _run(self) -> None:
        try:
            self.result = self.network.complete_fit(self.dataset)
        except Exception as e:
            self.error = e
            # fit() reports numeric failures itself via on_fit_error
            if not isinstance(e, NumericInstabilityError):
                self.events.put(FitEvent(EVENT_ERROR, exception=e))
            logger.exception(f"Background fit failed: {e}")
        finally:
            self.network.remove_listener(self._listener)
            if not self._listener.finished:
                self.events.put(FitEvent(EVENT_FINISH))

    def stop(self) -> None:
        self.network.stop_fitting()

    def join(self, timeout: Optional[float] = None) -> Optional[FitResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[FitEvent]:
        """
        Yield events until the finish event.

        Args:
            timeout: Seconds to wait for each event; ``queue.Empty`` is
                raised when it elapses
        """
        while True:
            event = self.events.get(timeout=timeout)
            yield event
            if event.kind == EVENT_FINISH:
                return
