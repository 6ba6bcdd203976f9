"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for trained networks.

Each row stores the pickled NeuralNetwork next to queryable metadata:
topology (as JSON), activation name, whether it has been trained, the
final network error and the number of iterations the last fit ran.
"""

import sqlite3
import pickle
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'
DB_FILENAME = 'networks.db'


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that understands numpy scalars and arrays."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        return super().default(obj)


class ModelDatabase:
    """
    Manages the SQLite database of saved networks.

    Args:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str = f'{DEFAULT_MODEL_DIR}/{DB_FILENAME}'):
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection that commits on success and rolls back on error."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    activation TEXT NOT NULL,
                    network_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    final_error REAL,
                    iterations INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    def save_network_to_db(
        self,
        network,
        network_id: str,
        trained: bool = True,
        final_error: Optional[float] = None,
        iterations: Optional[int] = None
    ) -> bool:
        """
        Insert or replace a network.

        Re-saving an existing id keeps its original ``created_at``.

        Args:
            network: NeuralNetwork to save
            network_id: Unique identifier for the network
            trained: Whether the network has been fitted
            final_error: Network error after the last fit
            iterations: Iterations run by the last fit

        Returns:
            bool: True on success

        Raises:
            ValueError: If final_error is negative
        """
        if final_error is not None and not final_error >= 0.0:
            raise ValueError(
                f"Final error must be non-negative, got {final_error}"
            )

        network_data = pickle.dumps(network)
        architecture_json = json.dumps(network.sizes, cls=NetworkEncoder)
        activation = getattr(network.activation, 'name', '') or \
            type(network.activation).__name__.lower()

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, activation, network_data,
                 trained, final_error, iterations, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    activation = excluded.activation,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    final_error = excluded.final_error,
                    iterations = excluded.iterations,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                activation,
                network_data,
                1 if trained else 0,
                final_error,
                iterations
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, final_error={final_error}"
        )
        return True

    def load_network_from_db(self, network_id: str):
        """Return the unpickled network, or None if the id is unknown."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Network '{network_id}' not found")
                return None

            network = pickle.loads(row['network_data'])
            logger.info(f"Loaded network '{network_id}'")
            return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Metadata for every saved network, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, activation, trained,
                       final_error, iterations, created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')

            networks = []
            for row in cursor.fetchall():
                metadata = _row_to_metadata(row)
                architecture = metadata['architecture']
                metadata['weights_shape'] = [
                    [architecture[i + 1], architecture[i]]
                    for i in range(len(architecture) - 1)
                ]
                metadata['biases_shape'] = [
                    [architecture[i + 1]]
                    for i in range(len(architecture) - 1)
                ]
                networks.append(metadata)

            logger.debug(f"Listed {len(networks)} networks")
            return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """Returns True if a row was deleted."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted network '{network_id}'")
            else:
                logger.warning(
                    f"Could not delete network '{network_id}': not found"
                )
            return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Args:
            days: Age threshold in days

        Returns:
            int: Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM networks
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Metadata for one network without unpickling it."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, activation, trained,
                       final_error, iterations, created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(
                    f"Metadata for network '{network_id}' not found"
                )
                return None

            return _row_to_metadata(row)


def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        'network_id': row['network_id'],
        'architecture': json.loads(row['architecture']),
        'activation': row['activation'],
        'trained': bool(row['trained']),
        'final_error': row['final_error'],
        'iterations': row['iterations'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at']
    }


# Shared instance for the default model directory
_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=os.path.join(model_dir, DB_FILENAME))
    if _db is None:
        _db = ModelDatabase()
    return _db


def save_network(
    network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    final_error: Optional[float] = None,
    iterations: Optional[int] = None
) -> bool:
    """
    Save a network to the SQLite database.

    Args:
        network: The NeuralNetwork to save
        network_id: A unique identifier for the network
        model_dir: Directory holding the database file
        trained: Whether the network has been fitted
        final_error: Network error after the last fit
        iterations: Iterations run by the last fit

    Returns:
        bool: True if the save was successful, False otherwise

    Raises:
        ValueError: If final_error is negative

    Example:
        >>> net = NeuralNetwork([2, 3, 1])
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        db = _get_db(model_dir)
        return db.save_network_to_db(
            network, network_id, trained, final_error, iterations
        )

    except ValueError:
        raise
    except (AttributeError, TypeError, pickle.PicklingError) as e:
        logger.error(
            f"Serialization error saving network '{network_id}': {e}"
        )
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False


def load_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR):
    """
    Load a network from the SQLite database.

    Returns:
        The NeuralNetwork, or None if it is missing or unreadable
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)

    except (pickle.UnpicklingError, AttributeError, EOFError) as e:
        logger.error(
            f"Deserialization error loading network '{network_id}': {e}"
        )
        return None
    except sqlite3.Error as e:
        logger.error(
            f"Database error loading network '{network_id}': {e}"
        )
        return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Example:
        >>> for net in list_saved_networks():
        ...     print(f"{net['network_id']}: {net['architecture']}")
    """
    try:
        return _get_db(model_dir).list_networks_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    """Delete a saved network; False if it did not exist or on error."""
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False


def delete_old_networks(days: float = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Delete networks older than ``days`` days.

    Returns:
        int: Number deleted, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
        return -1


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a network without loading the network itself.

    Example:
        >>> metadata = get_network_metadata("xor")
        >>> if metadata:
        ...     print(f"Final error: {metadata['final_error']}")
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{network_id}': {e}"
        )
        return None
