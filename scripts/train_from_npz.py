#!/usr/bin/env python3
"""
Train a network on a dataset stored in NPZ format.

Usage:
    python scripts/train_from_npz.py [path/to/dataset.npz]

Without a path the script writes the XOR truth table to data/xor.npz and
trains on that. Hyperparameters come from NN_* environment variables,
for example:

    NN_HIDDEN_LAYERS=3 NN_LEARNING_METHOD=Batch NN_LEARNING_RATE=0.5 \\
        python scripts/train_from_npz.py

The script will:
1. Load (or create) the dataset
2. Build a network from the training configuration
3. Train it on a background thread, printing progress
4. Stop training cleanly on Ctrl+C
5. Print the prediction for every sample
"""

import os
import sys
import logging

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from nnengine.config import TrainingConfig
from nnengine.dataset import Dataset
from nnengine.dataset_loader import load_dataset, save_dataset
from nnengine.training import EVENT_ERROR, EVENT_UPDATE, BackgroundFit

XOR_INPUTS = [[0, 0], [0, 1], [1, 0], [1, 1]]
XOR_TARGETS = [[0], [1], [1], [0]]

PRINT_EVERY = 100


def create_xor_dataset(filepath: str) -> None:
    """Write the XOR truth table as an NPZ dataset."""
    print(f"💾 Writing XOR dataset to: {filepath}")
    save_dataset(Dataset(XOR_INPUTS, XOR_TARGETS), filepath)


def main():
    """Main training function."""
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'WARNING').upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("Neural Network Trainer")
    print("=" * 60)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)

    if len(sys.argv) > 1:
        dataset_path = sys.argv[1]
    else:
        dataset_path = os.path.join(project_root, 'data', 'xor.npz')
        if not os.path.exists(dataset_path):
            create_xor_dataset(dataset_path)

    try:
        config = TrainingConfig.from_env()
        dataset = config.prepare_dataset(load_dataset(dataset_path, seed=config.seed))
        network = config.build_network(dataset.input_dimension, dataset.output_dimension)
        config.apply_to(network, dataset)
    except (OSError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    print(f"\n📂 Dataset: {dataset_path} ({dataset.size()} samples)")
    print(f"🧠 Topology: {network.sizes}, method: {config.learning_method}, "
          f"batch size: {network.batch_size}")
    print("   Press Ctrl+C to stop training.\n")

    job = BackgroundFit(network, dataset).start()

    try:
        for event in job.iter_events():
            if event.kind == EVENT_UPDATE and event.iteration % PRINT_EVERY == 0:
                print(f"   iteration {event.iteration:>7}: error {event.error:.6f}")
            elif event.kind == EVENT_ERROR:
                print(f"❌ Training failed: {event.exception}")
    except KeyboardInterrupt:
        print("\n⏹  Stopping after the current iteration...")
        job.stop()

    result = job.join()
    if result is None:
        sys.exit(1)

    print(f"\n✅ Finished: {result.reason} after {result.iterations} "
          f"iteration(s), error {result.error}")

    print("\n📝 Predictions:")
    for x, y in zip(dataset.inputs, dataset.targets):
        output = network.predict(x)
        print(f"   {np.round(x, 3).tolist()} -> {np.round(output, 3).tolist()} "
              f"(target {y.tolist()})")


if __name__ == '__main__':
    main()
