"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for network training.

This module provides endpoints for:
- Creating and managing neural networks
- Training networks in the background with real-time progress updates
- Stopping a running training job
- Predicting with a network, including while it is being trained
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import logging
from typing import Dict, Any, List

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from nnengine.activation import get_activation
from nnengine.config import TrainingConfig
from nnengine.dataset_loader import build_dataset
from nnengine.errors import (
    ConcurrentFitError,
    ConfigurationError,
    DimensionMismatchError,
    NeuralNetworkError,
    NumericInstabilityError,
)
from nnengine.initializers import RandomWeightInitializer
from nnengine.network import CallbackListener, NeuralNetwork
from nnengine.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: quiet the socket and werkzeug loggers
    - In development: show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('nnengine').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'
model_dir = os.getenv('MODEL_DIR', 'models')

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup so networks saved before a restart stay available.
    """
    saved_networks = list_saved_networks(model_dir)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, model_dir)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'trained': net_info['trained'],
            'final_error': net_info['final_error'],
            'job_id': None
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


reload_saved_networks()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Delete networks older than 2 days, then repeat every 24 hours.

    Networks that disappear from the database are also dropped from
    memory, unless they are being trained.
    """
    while True:
        try:
            deleted_count = delete_old_networks(days=2, model_dir=model_dir)

            if deleted_count > 0:
                saved_ids = {
                    net['network_id'] for net in list_saved_networks(model_dir)
                }
                for nid in list(active_networks):
                    info = active_networks[nid]
                    if nid not in saved_ids and info['trained'] and \
                            not info['network'].is_being_fitted():
                        del active_networks[nid]
                        logger.info(f"Removed network {nid} from memory (deleted from database)")
            elif deleted_count < 0:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Drop completed, cancelled and failed jobs from memory."""
    finished_statuses = {'completed', 'cancelled', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """Start the cleanup greenlet once; later calls do nothing."""
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


start_cleanup_task()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def error_response(message: str, status: int):
    return jsonify({'error': message}), status


def network_summary(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    net = info['network']
    return {
        'network_id': network_id,
        'architecture': info['architecture'],
        'activation': net.activation.name,
        'trained': info['trained'],
        'final_error': info['final_error'],
        'training': net.is_being_fitted(),
        'status': 'in_memory'
    }


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of running training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body:
        {
            'layer_sizes': [2, 3, 1],
            'activation': 'sigmoid',        # optional
            'weight_bounds': [-0.5, 0.5],   # optional
            'seed': 42                      # optional
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes')
    bounds = data.get('weight_bounds', [-0.5, 0.5])

    try:
        if not isinstance(bounds, list) or len(bounds) != 2:
            raise ConfigurationError("weight_bounds must be [lower, upper]")
        net = NeuralNetwork(
            layer_sizes,
            initializer=RandomWeightInitializer(
                bounds[0], bounds[1], seed=data.get('seed')
            ),
            activation=get_activation(data.get('activation', 'sigmoid'))
        )
    except (ConfigurationError, TypeError) as e:
        logger.warning(f"Invalid network requested: {e}")
        return error_response(str(e), 400)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'final_error': None,
        'job_id': None
    }

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'activation': net.activation.name,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'inputs': [[0, 0], [0, 1], ...],
            'targets': [[0], [1], ...],
            'learning_method': 'Mini-batch',   # any TrainingConfig field
            'mini_batch_size': 5,
            'learning_rate': 0.05,
            ...
        }

    Samples whose width does not match the network are discarded. The
    network counts as being trained from this response on, so a second
    request gets 409 until the job finishes.
    Configuration problems are reported here with status 400; failures
    during training arrive as a 'training_error' event.

    Returns:
        JSON with job_id, network_id, sample counts and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    info = active_networks[network_id]
    net: NeuralNetwork = info['network']
    if net.is_being_fitted():
        return error_response('Network is already being trained', 409)

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    targets = data.get('targets')
    if not isinstance(inputs, list) or not isinstance(targets, list):
        return error_response('inputs and targets must be lists', 400)

    try:
        config = TrainingConfig.from_dict(data)
        dataset = build_dataset(
            inputs, targets,
            net.input_neuron_count, net.output_neuron_count,
            seed=config.seed
        )
        dataset = config.prepare_dataset(dataset)
        config.apply_to(net, dataset)
        net.begin_fit(dataset)
    except ConcurrentFitError as e:
        return error_response(str(e), 409)
    except (ConfigurationError, DimensionMismatchError) as e:
        logger.warning(f"Invalid training request for {network_id}: {e}")
        return error_response(str(e), 400)

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'iteration': 0,
        'error': None,
        'max_iterations': config.max_iterations
    }
    info['job_id'] = job_id

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"samples={dataset.size()}, batch_size={net.batch_size}, "
        f"lr={net.learning_rate}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(train_network_task, network_id, job_id, dataset)

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'samples': dataset.size(),
        'batch_size': net.batch_size,
        'status': 'training_started'
    }), 202


def train_network_task(network_id: str, job_id: str, dataset) -> None:
    """
    Background task that fits a network.

    Sends progress updates via WebSocket after every iteration.
    """
    info = active_networks[network_id]
    net: NeuralNetwork = info['network']
    job = training_jobs[job_id]

    def on_start() -> None:
        job['status'] = 'training'
        socketio.emit('training_start', {'job_id': job_id, 'network_id': network_id})

    def on_update(iteration: int, error: float) -> None:
        job['iteration'] = iteration
        job['error'] = error
        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'iteration': iteration,
            'max_iterations': job['max_iterations'],
            'error': error
        })
        # Let gevent send the message and serve stop/predict requests
        gevent.sleep(0)

    listener = CallbackListener(on_start=on_start, on_update=on_update)
    net.add_listener(listener)

    try:
        result = net.complete_fit(dataset)

        info['trained'] = info['trained'] or result.iterations > 0
        if result.error is not None:
            info['final_error'] = result.error
        job['status'] = 'cancelled' if result.cancelled else 'completed'
        job['reason'] = result.reason
        job['iterations'] = result.iterations

        save_network(
            net, network_id, model_dir=model_dir, trained=info['trained'],
            final_error=result.error, iterations=result.iterations
        )

        logger.info(
            f"Training {job['status']} for job {job_id}: "
            f"{result.iterations} iteration(s), error {result.error}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': job['status'],
            'reason': result.reason,
            'iterations': result.iterations,
            'error': result.error
        })

    except NeuralNetworkError as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        job['status'] = 'failed'
        job['message'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })

    finally:
        net.remove_listener(listener)
        gevent.sleep(0)


@app.route('/api/networks/<network_id>/stop', methods=['POST'])
def stop_training(network_id: str):
    """Ask a pending or running training job to stop after its current iteration."""
    if network_id not in active_networks:
        return error_response('Network not found', 404)

    net: NeuralNetwork = active_networks[network_id]['network']
    if not net.is_being_fitted():
        return error_response('Network is not being trained', 409)

    net.stop_fitting()
    logger.info(f"Stop requested for network {network_id}")

    return jsonify({
        'network_id': network_id,
        'job_id': active_networks[network_id].get('job_id'),
        'status': 'stopping'
    }), 202


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run a forward pass.

    Request body:
        {'sample': [0, 1]}

    Returns:
        JSON with the output vector and the index of the largest output
    """
    if network_id not in active_networks:
        return error_response('Network not found', 404)

    net: NeuralNetwork = active_networks[network_id]['network']
    data = request.get_json(silent=True) or {}
    sample = data.get('sample')
    if not isinstance(sample, list):
        return error_response('sample must be a list of numbers', 400)

    try:
        output = net.predict(sample)
    except (DimensionMismatchError, ValueError, TypeError) as e:
        return error_response(str(e), 400)
    except NumericInstabilityError as e:
        return error_response(str(e), 422)

    return jsonify({
        'network_id': network_id,
        'output': array_to_float_list(output),
        'predicted_index': int(np.argmax(output)),
        'training': net.is_being_fitted()
    }), 200


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return error_response('Training job not found', 404)
    return jsonify(training_jobs[job_id]), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        network_summary(nid, info) for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in list_saved_networks(model_dir):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    info = active_networks.get(network_id)
    if info is not None and info['network'].is_being_fitted():
        return error_response('Network is being trained; stop it first', 409)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, model_dir)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise
