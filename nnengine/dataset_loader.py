"""
dataset_loader.py
~~~~~~~~~~~~~~~~~

Boundary between raw sample storage and the Dataset container.

The engine assumes a dimensionally consistent dataset, so everything
that builds one from outside data goes through here: samples of the
wrong width are discarded and logged, labelled groups are turned into
one-hot targets, and datasets are read from / written to ``.npz`` files.
"""

import os
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from nnengine.dataset import Dataset
from nnengine.errors import ConfigurationError

logger = logging.getLogger(__name__)


def filter_samples(
    inputs: Sequence[Sequence[float]],
    targets: Sequence[Sequence[float]],
    input_width: Optional[int] = None,
    output_width: Optional[int] = None
) -> Tuple[List[np.ndarray], List[np.ndarray], int]:
    """
    Drop samples whose input or target width is wrong.

    When a width is None, the width of the first sample is used.

    Args:
        inputs: Raw input vectors
        targets: Raw target vectors, paired with inputs by position
        input_width: Required input length
        output_width: Required target length

    Returns:
        tuple: (kept inputs, kept targets, number of discarded samples)
    """
    if len(inputs) != len(targets):
        logger.warning(
            f"Got {len(inputs)} inputs and {len(targets)} targets; "
            f"unpaired samples are discarded"
        )

    kept_x: List[np.ndarray] = []
    kept_y: List[np.ndarray] = []
    discarded = 0

    for index, (x, y) in enumerate(zip(inputs, targets)):
        try:
            x = np.array(x, dtype=float).reshape(-1)
            y = np.array(y, dtype=float).reshape(-1)
        except (TypeError, ValueError):
            logger.warning(f"Discarding sample {index}: not numeric")
            discarded += 1
            continue

        if input_width is None:
            input_width = x.size
        if output_width is None:
            output_width = y.size

        if x.size != input_width or y.size != output_width:
            logger.warning(
                f"Discarding sample {index}: shape ({x.size}, {y.size}), "
                f"expected ({input_width}, {output_width})"
            )
            discarded += 1
            continue

        kept_x.append(x)
        kept_y.append(y)

    discarded += abs(len(inputs) - len(targets))
    if discarded:
        logger.info(f"Kept {len(kept_x)} sample(s), discarded {discarded}")
    return kept_x, kept_y, discarded


def build_dataset(
    inputs: Sequence[Sequence[float]],
    targets: Sequence[Sequence[float]],
    input_width: Optional[int] = None,
    output_width: Optional[int] = None,
    seed: Optional[int] = None
) -> Dataset:
    """
    Filter raw samples and wrap the survivors in a Dataset.

    Raises:
        ConfigurationError: If no sample survives filtering
    """
    kept_x, kept_y, _ = filter_samples(inputs, targets, input_width, output_width)
    if not kept_x:
        raise ConfigurationError("No valid samples to build a dataset from")
    return Dataset(kept_x, kept_y, seed=seed)


def one_hot(index: int, size: int) -> np.ndarray:
    """Target vector with 1.0 at ``index`` and 0.0 elsewhere."""
    if not 0 <= index < size:
        raise ConfigurationError(
            f"Class index {index} out of range for {size} class(es)"
        )
    vector = np.zeros(size)
    vector[index] = 1.0
    return vector


def dataset_from_labelled_samples(
    groups: Dict[str, Sequence[Sequence[float]]],
    input_width: Optional[int] = None,
    seed: Optional[int] = None
) -> Tuple[Dataset, List[str]]:
    """
    Build a classification dataset from samples grouped by label.

    Each label gets a one-hot target; labels are numbered in the mapping's
    insertion order.

    Args:
        groups: Mapping of label to the samples drawn for it
        input_width: Required input length (defaults to the first sample's)
        seed: Seed for the dataset's shuffle generator

    Returns:
        tuple: (Dataset, labels in class-index order)
    """
    labels = list(groups)
    inputs: List[Sequence[float]] = []
    targets: List[np.ndarray] = []

    for class_index, label in enumerate(labels):
        target = one_hot(class_index, len(labels))
        samples = groups[label]
        logger.info(f"Loaded {len(samples)} sample(s) for symbol '{label}'")
        for sample in samples:
            inputs.append(sample)
            targets.append(target)

    dataset = build_dataset(inputs, targets, input_width, len(labels), seed=seed)
    logger.info(f"Loaded {dataset.size()} samples across {len(labels)} class(es)")
    return dataset, labels


def load_dataset(
    path: str,
    input_width: Optional[int] = None,
    output_width: Optional[int] = None,
    seed: Optional[int] = None
) -> Dataset:
    """
    Load a dataset from an ``.npz`` file with ``inputs`` and ``targets``.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the arrays are missing or no sample is valid
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Dataset file '{path}' does not exist.")

    logger.info(f"Loading dataset from '{path}'...")
    with np.load(path) as data:
        if 'inputs' not in data or 'targets' not in data:
            raise ConfigurationError(
                f"Dataset file '{path}' must contain 'inputs' and 'targets'"
            )
        inputs = data['inputs']
        targets = data['targets']

    return build_dataset(inputs, targets, input_width, output_width, seed=seed)


def save_dataset(dataset: Dataset, path: str) -> None:
    """Write a dataset to a compressed ``.npz`` file."""
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)

    np.savez_compressed(
        path,
        inputs=np.stack(dataset.inputs),
        targets=np.stack(dataset.targets)
    )
    logger.info(f"Saved {dataset.size()} samples to '{path}'")
