"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for running fits on a background thread.
"""

import threading
import pytest
import os
import sys

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnengine.dataset import Dataset
from nnengine.errors import (
    ConcurrentFitError,
    DimensionMismatchError,
    NumericInstabilityError,
)
from nnengine.initializers import RandomWeightInitializer
from nnengine.network import CallbackListener, NeuralNetwork, REASON_CANCELLED
from nnengine.training import (
    BackgroundFit,
    EVENT_ERROR,
    EVENT_FINISH,
    EVENT_START,
    EVENT_UPDATE,
)

XOR_INPUTS = [[0, 0], [0, 1], [1, 0], [1, 1]]
XOR_TARGETS = [[0], [1], [1], [0]]


@pytest.fixture
def dataset():
    return Dataset(XOR_INPUTS, XOR_TARGETS, seed=0)


def make_network(**kwargs):
    params = dict(
        initializer=RandomWeightInitializer(seed=2),
        learning_rate=0.3,
        batch_size=4,
        min_acceptable_error=0.0,
        max_iterations=20
    )
    params.update(kwargs)
    return NeuralNetwork([2, 3, 1], **params)


@pytest.mark.integration
class TestBackgroundFit:

    def test_events_in_order(self, dataset):
        job = BackgroundFit(make_network(), dataset).start()

        events = list(job.iter_events(timeout=30))
        job.join()

        kinds = [e.kind for e in events]
        assert kinds[0] == EVENT_START
        assert kinds[-1] == EVENT_FINISH
        assert kinds.count(EVENT_UPDATE) == 20
        iterations = [e.iteration for e in events if e.kind == EVENT_UPDATE]
        assert iterations == list(range(1, 21))
        assert job.result.iterations == 20
        assert job.error is None
        assert not job.is_alive()

    def test_listener_removed_after_fit(self, dataset):
        network = make_network()
        job = BackgroundFit(network, dataset).start()
        job.join(timeout=30)

        assert network._listeners == []

    def test_cancel_from_another_thread(self, dataset):
        network = make_network(max_iterations=10 ** 9)
        updates = []
        enough = threading.Event()

        def on_update(iteration, error):
            updates.append(iteration)
            if iteration >= 5:
                enough.set()

        network.add_listener(CallbackListener(on_update=on_update))
        job = BackgroundFit(network, dataset).start()

        assert enough.wait(30)
        job.stop()
        seen_at_stop = len(updates)
        result = job.join(timeout=30)

        assert not job.is_alive()
        assert result.reason == REASON_CANCELLED
        # at most the iteration in flight completes after the request
        assert len(updates) <= seen_at_stop + 1
        assert not network.is_being_fitted()

    def test_stop_right_after_start_is_honoured(self):
        rng = np.random.default_rng(5)
        inputs = rng.uniform(0, 1, (20000, 2))
        targets = (inputs.sum(axis=1, keepdims=True) > 1).astype(float)
        network = make_network(max_iterations=10 ** 9)

        job = BackgroundFit(network, Dataset(inputs, targets, seed=0)).start()
        job.stop()
        result = job.join(timeout=30)

        assert not job.is_alive()
        assert result.reason == REASON_CANCELLED
        assert result.iterations == 0
        assert not network.is_being_fitted()

    def test_network_busy_as_soon_as_start_returns(self, dataset):
        network = make_network(max_iterations=10 ** 9)

        first = BackgroundFit(network, dataset).start()
        try:
            assert network.is_being_fitted()
            with pytest.raises(ConcurrentFitError):
                BackgroundFit(network, Dataset(XOR_INPUTS, XOR_TARGETS)).start()
        finally:
            first.stop()
            first.join(timeout=30)
        assert first.result.cancelled

    def test_start_validates_on_caller_thread(self, dataset):
        network = make_network()
        job = BackgroundFit(network, Dataset([[1, 2, 3]], [[1]]))
        with pytest.raises(DimensionMismatchError):
            job.start()
        assert not job.is_alive()
        assert not network.is_being_fitted()
        assert network.fit(dataset).iterations == 20

    def test_start_twice_rejected(self, dataset):
        job = BackgroundFit(make_network(), dataset).start()
        with pytest.raises(RuntimeError):
            job.start()
        job.join(timeout=30)

    def test_second_job_on_busy_network_rejected(self, dataset):
        network = make_network(max_iterations=10 ** 9)
        started = threading.Event()
        network.add_listener(CallbackListener(on_start=started.set))

        first = BackgroundFit(network, dataset).start()
        assert started.wait(30)
        try:
            with pytest.raises(ConcurrentFitError):
                BackgroundFit(network, Dataset(XOR_INPUTS, XOR_TARGETS)).start()
        finally:
            first.stop()
            first.join(timeout=30)

    def test_numeric_failure_reported_once(self):
        dataset = Dataset([[np.nan, 0.0]], [[1.0]])
        network = make_network(batch_size=1)
        job = BackgroundFit(network, dataset).start()

        events = list(job.iter_events(timeout=30))
        job.join()

        kinds = [e.kind for e in events]
        assert kinds == [EVENT_START, EVENT_ERROR, EVENT_FINISH]
        assert isinstance(events[1].exception, NumericInstabilityError)
        assert isinstance(job.error, NumericInstabilityError)
        assert job.result is None
