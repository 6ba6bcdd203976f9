"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST endpoints, using Flask's test client.

Background training is captured instead of spawned, so each test decides
when (and whether) the training task runs.
"""

import tempfile
import pytest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

os.environ['MODEL_DIR'] = tempfile.mkdtemp()

from nnengine import api_server
from nnengine.model_persistence import get_network_metadata

XOR = {
    'inputs': [[0, 0], [0, 1], [1, 0], [1, 1]],
    'targets': [[0], [1], [1], [0]],
}


@pytest.fixture
def client():
    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as client:
        yield client


@pytest.fixture
def captured_tasks(monkeypatch):
    tasks = []
    monkeypatch.setattr(
        api_server.socketio, 'start_background_task',
        lambda target, *args: tasks.append((target, args))
    )
    return tasks


@pytest.fixture
def network_id(client):
    response = client.post('/api/networks', json={
        'layer_sizes': [2, 3, 1],
        'seed': 7
    })
    assert response.status_code == 201
    network_id = response.get_json()['network_id']
    yield network_id
    api_server.active_networks.pop(network_id, None)


@pytest.mark.unit
class TestNetworkEndpoints:

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'online'

    def test_create(self, client, network_id):
        info = api_server.active_networks[network_id]
        assert info['architecture'] == [2, 3, 1]
        assert info['trained'] is False

    @pytest.mark.parametrize("body", [
        {'layer_sizes': [2]},
        {'layer_sizes': [2, 0, 1]},
        {'layer_sizes': [2, 1], 'activation': 'relu'},
        {'layer_sizes': [2, 1], 'weight_bounds': [1, -1]},
        {'layer_sizes': [2, 1], 'weight_bounds': 5},
        {},
    ])
    def test_create_invalid(self, client, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_predict(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'sample': [0, 1]})

        assert response.status_code == 200
        body = response.get_json()
        assert len(body['output']) == 1
        assert 0.0 < body['output'][0] < 1.0
        assert body['predicted_index'] == 0
        assert body['training'] is False

    @pytest.mark.parametrize("sample", [[0, 1, 2], 'abc', None, ['a', 'b']])
    def test_predict_invalid_sample(self, client, network_id, sample):
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'sample': sample})
        assert response.status_code == 400

    def test_predict_non_finite_sample(self, client, network_id):
        response = client.post(
            f'/api/networks/{network_id}/predict',
            data='{"sample": [NaN, 1]}',
            content_type='application/json'
        )
        assert response.status_code == 422

    def test_unknown_network(self, client):
        assert client.post('/api/networks/missing/predict',
                           json={'sample': [0]}).status_code == 404
        assert client.post('/api/networks/missing/train',
                           json=XOR).status_code == 404
        assert client.post('/api/networks/missing/stop').status_code == 404
        assert client.delete('/api/networks/missing').status_code == 404
        assert client.get('/api/training/missing').status_code == 404

    def test_list_includes_in_memory(self, client, network_id):
        response = client.get('/api/networks')
        ids = [n['network_id'] for n in response.get_json()['networks']]
        assert network_id in ids

    def test_delete(self, client, network_id):
        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert network_id not in api_server.active_networks


@pytest.mark.unit
class TestTrainingEndpoints:

    def test_stop_when_idle(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/stop')
        assert response.status_code == 409

    @pytest.mark.parametrize("body", [
        {'inputs': 'x', 'targets': [[0]]},
        {'inputs': [[0, 1]]},
        dict(XOR, learning_rate=-1),
        dict(XOR, mini_batch_size=10),
        dict(XOR, learning_method='Adam'),
        {'inputs': [[1, 2, 3]], 'targets': [[1]]},
    ])
    def test_train_invalid(self, client, network_id, captured_tasks, body):
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400
        assert captured_tasks == []

    def test_train_while_training(self, client, network_id, captured_tasks):
        net = api_server.active_networks[network_id]['network']
        net._fitting.set()
        try:
            response = client.post(f'/api/networks/{network_id}/train', json=XOR)
            assert response.status_code == 409
            assert client.delete(f'/api/networks/{network_id}').status_code == 409
        finally:
            net._fitting.clear()

    def test_train_starts_job(self, client, network_id, captured_tasks):
        response = client.post(f'/api/networks/{network_id}/train', json=dict(
            XOR, learning_method='Batch', max_iterations=5
        ))

        assert response.status_code == 202
        body = response.get_json()
        assert body['samples'] == 4
        assert body['batch_size'] == 4
        assert len(captured_tasks) == 1

        status = client.get(f"/api/training/{body['job_id']}").get_json()
        assert status['status'] == 'pending'
        assert status['max_iterations'] == 5

    def test_training_task_completes_and_saves(self, client, network_id,
                                               captured_tasks):
        response = client.post(f'/api/networks/{network_id}/train', json=dict(
            XOR, learning_method='Stochastic', max_iterations=8,
            min_acceptable_error=0.0
        ))
        job_id = response.get_json()['job_id']
        target, args = captured_tasks[0]

        target(*args)

        job = api_server.training_jobs[job_id]
        assert job['status'] == 'completed'
        assert job['iterations'] == 8
        assert job['reason'] == 'max_iterations'
        assert api_server.active_networks[network_id]['trained'] is True

        metadata = get_network_metadata(network_id, api_server.model_dir)
        assert metadata['trained'] is True
        assert metadata['iterations'] == 8

    def test_discarded_samples_not_counted(self, client, network_id,
                                           captured_tasks):
        body = {
            'inputs': XOR['inputs'] + [[1, 2, 3]],
            'targets': XOR['targets'] + [[1]],
            'learning_method': 'Stochastic',
        }
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 202
        assert response.get_json()['samples'] == 4

    def test_pending_job_blocks_train_and_can_be_stopped(self, client, network_id,
                                                         captured_tasks):
        net = api_server.active_networks[network_id]['network']
        first = client.post(f'/api/networks/{network_id}/train', json=dict(
            XOR, learning_method='Batch', learning_rate=0.5
        ))
        assert first.status_code == 202
        job_id = first.get_json()['job_id']

        second = client.post(f'/api/networks/{network_id}/train', json=dict(
            XOR, learning_method='Batch', learning_rate=9.0
        ))
        assert second.status_code == 409
        assert net.learning_rate == 0.5
        assert len(captured_tasks) == 1
        assert api_server.active_networks[network_id]['job_id'] == job_id

        stop = client.post(f'/api/networks/{network_id}/stop')
        assert stop.status_code == 202
        assert stop.get_json()['job_id'] == job_id

        target, args = captured_tasks[0]
        target(*args)

        job = api_server.training_jobs[job_id]
        assert job['status'] == 'cancelled'
        assert job['iterations'] == 0
        assert api_server.active_networks[network_id]['trained'] is False
        assert not net.is_being_fitted()

    def test_cleanup_finished_jobs(self):
        api_server.training_jobs['done'] = {'status': 'completed'}
        api_server.training_jobs['running'] = {'status': 'training'}

        api_server.cleanup_finished_training_jobs()

        assert 'done' not in api_server.training_jobs
        assert 'running' in api_server.training_jobs
        del api_server.training_jobs['running']
