"""
config.py
~~~~~~~~~

Training configuration: learning method, hidden layer definition and
hyperparameters.

Values can come from keyword arguments, a request payload
(``TrainingConfig.from_dict``) or environment variables
(``TrainingConfig.from_env``).
"""

import os
import logging
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from nnengine.activation import get_activation
from nnengine.dataset import Dataset
from nnengine.errors import ConfigurationError
from nnengine.initializers import RandomWeightInitializer
from nnengine.network import NeuralNetwork

logger = logging.getLogger(__name__)

HIDDEN_LAYERS_SEPARATOR = 'x'
MIN_NEURONS_IN_HIDDEN_LAYER = 1
MAX_NEURONS_IN_HIDDEN_LAYER = 100


class LearningMethod(Enum):
    STOCHASTIC = 'Stochastic'
    MINI_BATCH = 'Mini-batch'
    BATCH = 'Batch'

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> 'LearningMethod':
        """
        Look up a method by display name ('Mini-batch') or enum name
        ('MINI_BATCH'), case-insensitively.

        Raises:
            ConfigurationError: If the name matches no method
        """
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower()
        for method in cls:
            if key in (method.value.lower(), method.name.lower()):
                return method
        raise ConfigurationError(
            f"Could not convert '{name}' to a specific learning method."
        )


def parse_hidden_layers(definition: str) -> List[int]:
    """
    Parse a hidden layer definition such as ``"10x8"``.

    Args:
        definition: Layer widths separated by 'x'; empty for none

    Returns:
        List of hidden layer widths

    Raises:
        ConfigurationError: If a width is not an integer in 1..100
    """
    definition = (definition or '').strip()
    if not definition:
        return []

    widths = []
    for part in definition.lower().split(HIDDEN_LAYERS_SEPARATOR):
        try:
            width = int(part.strip())
        except ValueError:
            raise ConfigurationError(
                f"Invalid hidden layers definition '{definition}'"
            ) from None
        if not MIN_NEURONS_IN_HIDDEN_LAYER <= width <= MAX_NEURONS_IN_HIDDEN_LAYER:
            raise ConfigurationError(
                f"Hidden layer width must be between "
                f"{MIN_NEURONS_IN_HIDDEN_LAYER} and "
                f"{MAX_NEURONS_IN_HIDDEN_LAYER}, got {width}"
            )
        widths.append(width)
    return widths


@dataclass
class TrainingConfig:
    """Hyperparameters for building and fitting a network."""

    learning_method: LearningMethod = LearningMethod.MINI_BATCH
    mini_batch_size: int = 5
    hidden_layers: str = '10x8'
    learning_rate: float = 0.05
    min_acceptable_error: float = 0.001
    max_iterations: int = 10000
    additional_permutations_per_sample: int = 0
    weight_lower_bound: float = -0.5
    weight_upper_bound: float = 0.5
    activation: str = 'sigmoid'
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self.learning_method = LearningMethod.from_name(self.learning_method)

    def validate(self) -> None:
        """
        Check every field; does not need a dataset.

        Raises:
            ConfigurationError: On the first invalid value
        """
        if self.mini_batch_size < 1:
            raise ConfigurationError(
                f"Mini-batch size must be at least 1, got {self.mini_batch_size}"
            )
        parse_hidden_layers(self.hidden_layers)
        if not self.learning_rate > 0:
            raise ConfigurationError(
                f"Learning rate must be positive, got {self.learning_rate}"
            )
        if not self.min_acceptable_error >= 0:
            raise ConfigurationError(
                f"Minimum acceptable error must be non-negative, "
                f"got {self.min_acceptable_error}"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"Maximum number of iterations must be at least 1, "
                f"got {self.max_iterations}"
            )
        if self.additional_permutations_per_sample < 0:
            raise ConfigurationError(
                "Additional permutations per sample cannot be negative"
            )
        if self.weight_lower_bound > self.weight_upper_bound:
            raise ConfigurationError(
                "Lower weight bound cannot be greater than upper bound"
            )
        get_activation(self.activation)

    def resolve_batch_size(self, dataset_size: int) -> int:
        """
        Batch size for the configured learning method.

        Raises:
            ConfigurationError: If the mini-batch size exceeds the dataset
        """
        if self.learning_method is LearningMethod.STOCHASTIC:
            return 1
        if self.learning_method is LearningMethod.BATCH:
            return dataset_size
        if self.mini_batch_size > dataset_size:
            raise ConfigurationError(
                f"Mini-batch size of {self.mini_batch_size} exceeds the "
                f"maximum value of {dataset_size}."
            )
        return self.mini_batch_size

    def build_topology(self, input_width: int, output_width: int) -> List[int]:
        return [input_width] + parse_hidden_layers(self.hidden_layers) + [output_width]

    def build_network(self, input_width: int, output_width: int) -> NeuralNetwork:
        """Create a network with this config's topology and hyperparameters."""
        self.validate()
        return NeuralNetwork(
            self.build_topology(input_width, output_width),
            initializer=RandomWeightInitializer(
                self.weight_lower_bound,
                self.weight_upper_bound,
                seed=self.seed
            ),
            activation=get_activation(self.activation),
            learning_rate=self.learning_rate,
            min_acceptable_error=self.min_acceptable_error,
            max_iterations=self.max_iterations,
        )

    def apply_to(self, network: NeuralNetwork, dataset: Dataset) -> None:
        """Copy the hyperparameters and resolved batch size onto a network."""
        self.validate()
        batch_size = self.resolve_batch_size(dataset.size())
        network.learning_rate = self.learning_rate
        network.min_acceptable_error = self.min_acceptable_error
        network.max_iterations = self.max_iterations
        network.batch_size = batch_size

    def prepare_dataset(self, dataset: Dataset) -> Dataset:
        """Expand the dataset when permutations per sample are requested."""
        if self.additional_permutations_per_sample == 0:
            return dataset
        return dataset.expand(self.additional_permutations_per_sample)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['learning_method'] = str(self.learning_method)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TrainingConfig':
        """
        Build a config from a mapping, ignoring unknown keys.

        Raises:
            ConfigurationError: If a value cannot be converted
        """
        kwargs = {}
        for field in fields(cls):
            if field.name not in data or data[field.name] is None:
                continue
            kwargs[field.name] = _convert(field.name, data[field.name])
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = 'NN_') -> 'TrainingConfig':
        """
        Read fields from environment variables, e.g. ``NN_LEARNING_RATE``.

        Unset variables keep their defaults.
        """
        data = {}
        for field in fields(cls):
            value = os.getenv(f'{prefix}{field.name.upper()}')
            if value is not None and value != '':
                data[field.name] = value
        if data:
            logger.debug(f"Training config overrides from environment: {sorted(data)}")
        return cls.from_dict(data)


_CONVERTERS = {
    'learning_method': LearningMethod.from_name,
    'mini_batch_size': int,
    'hidden_layers': str,
    'learning_rate': float,
    'min_acceptable_error': float,
    'max_iterations': int,
    'additional_permutations_per_sample': int,
    'weight_lower_bound': float,
    'weight_upper_bound': float,
    'activation': str,
    'seed': int,
}


def _convert(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid value for {name}: {value!r}")
    try:
        return _CONVERTERS[name](value)
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e
