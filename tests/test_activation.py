"""
test_activation.py
~~~~~~~~~~~~~~~~~~

Unit tests for activation strategies.
"""

import math
import pytest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnengine.activation import Sigmoid, Tanh, get_activation
from nnengine.errors import ConfigurationError
from nnengine.linalg import Vector


@pytest.mark.unit
class TestSigmoid:

    def test_scalar_values(self):
        sigmoid = Sigmoid()
        assert sigmoid.apply(0.0) == 0.5
        assert sigmoid.apply(2.0) == pytest.approx(1 / (1 + math.exp(-2.0)))

    def test_vector_matches_scalar(self):
        sigmoid = Sigmoid()
        values = [-3.0, 0.0, 1.5]

        result = sigmoid.apply(Vector(values))

        assert isinstance(result, Vector)
        for i, x in enumerate(values):
            assert result.get(i) == pytest.approx(sigmoid.apply(x))

    def test_large_inputs_saturate_without_nan(self):
        result = Sigmoid().apply(Vector.of(-1000.0, 1000.0))
        assert result.to_array().tolist() == [0.0, 1.0]

    def test_derivative_uses_output(self):
        derivative = Sigmoid().derivative(Vector.of(0.5, 0.9))
        assert derivative.to_array().tolist() == pytest.approx([0.25, 0.09])


@pytest.mark.unit
class TestTanh:

    def test_apply(self):
        assert Tanh().apply(0.5) == pytest.approx(math.tanh(0.5))

    def test_derivative_differs_from_logistic(self):
        y = Vector.of(0.5)
        assert Tanh().derivative(y).get(0) == pytest.approx(0.75)
        assert Sigmoid().derivative(y).get(0) == pytest.approx(0.25)


@pytest.mark.unit
class TestGetActivation:

    @pytest.mark.parametrize("name,expected", [
        ("sigmoid", Sigmoid),
        ("SIGMOID", Sigmoid),
        (" tanh ", Tanh),
    ])
    def test_lookup(self, name, expected):
        assert isinstance(get_activation(name), expected)

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError) as exc_info:
            get_activation("relu")
        assert "relu" in str(exc_info.value)

    def test_instances_compare_equal(self):
        assert Sigmoid() == Sigmoid()
        assert Sigmoid() != Tanh()
