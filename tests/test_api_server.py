"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Integration tests for the gradient canvas REST API.

Training jobs run synchronously here: the background task launcher is
replaced so each job finishes before the request returns.
"""

import base64

import pytest

from gradient_net import api_server


@pytest.fixture
def emitted(monkeypatch):
    """Record Socket.IO events instead of sending them."""
    events = []
    monkeypatch.setattr(
        api_server.socketio, 'emit',
        lambda event, data=None, **kwargs: events.append((event, data))
    )
    return events


@pytest.fixture
def client(monkeypatch, emitted):
    """Test client with empty state and synchronous, short training jobs."""
    api_server.active_canvases.clear()
    api_server.training_jobs.clear()
    monkeypatch.setattr(api_server, 'TRAINING_PASSES', 20)
    monkeypatch.setattr(api_server, 'CHUNK_PASSES', 8)
    monkeypatch.setattr(
        api_server.socketio, 'start_background_task',
        lambda target, *args, **kwargs: target(*args, **kwargs)
    )

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client

    api_server.active_canvases.clear()
    api_server.training_jobs.clear()


@pytest.fixture
def canvas_id(client):
    response = client.post('/api/canvases', json={
        'width': 64,
        'height': 32,
        'layer_shapes': [[4, 4], [3, 6]]
    })
    assert response.status_code == 201
    return response.get_json()['canvas_id']


@pytest.mark.integration
class TestCanvasEndpoints:
    """Test canvas creation, listing and deletion."""

    def test_status_reports_online(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online',
            'active_canvases': 0,
            'training_jobs': 0
        }

    def test_create_canvas_with_defaults(self, client):
        response = client.post('/api/canvases', json={})
        data = response.get_json()

        assert response.status_code == 201
        assert data['status'] == 'created'
        assert data['width'] == 400
        assert data['layer_shapes'] == [[7, 4], [7, 10], [3, 10]]
        assert data['points'] == []

    def test_create_canvas_rejects_invalid_topology(self, client):
        """Test that a layer narrower than the previous output is a 400."""
        response = client.post('/api/canvases', json={
            'width': 10, 'height': 10, 'layer_shapes': [[7, 4], [3, 5]]
        })
        assert response.status_code == 400
        assert 'error' in response.get_json()

    @pytest.mark.parametrize('body', [
        {'width': 'wide', 'height': 10},
        {'width': 0, 'height': 10},
        {'width': 10, 'height': 10, 'layer_shapes': 'big'},
        {'width': 10, 'height': 10, 'layer_shapes': [[2, 4]]},
    ])
    def test_create_canvas_rejects_bad_requests(self, client, body):
        assert client.post('/api/canvases', json=body).status_code == 400

    def test_list_and_get_canvas(self, client, canvas_id):
        listed = client.get('/api/canvases').get_json()['canvases']
        assert [c['canvas_id'] for c in listed] == [canvas_id]

        response = client.get(f'/api/canvases/{canvas_id}')
        assert response.status_code == 200
        assert response.get_json()['height'] == 32

    def test_delete_canvas(self, client, canvas_id):
        response = client.delete(f'/api/canvases/{canvas_id}')
        assert response.status_code == 200
        assert canvas_id not in api_server.active_canvases
        assert client.delete(f'/api/canvases/{canvas_id}').status_code == 404

    def test_unknown_canvas_is_404(self, client):
        assert client.get('/api/canvases/missing').status_code == 404
        assert client.post('/api/canvases/missing/train', json={}).status_code == 404
        assert client.get('/api/canvases/missing/image').status_code == 404


@pytest.mark.integration
class TestPointsAndTraining:
    """Test placing points and running training jobs."""

    def test_add_point_without_training(self, client, canvas_id):
        response = client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 10, 'y': 5, 'color': '#ff0000', 'train': False
        })

        assert response.status_code == 201
        assert response.get_json()['point'] == {'x': 10, 'y': 5, 'color': [255, 0, 0]}
        assert 'job_id' not in response.get_json()

    def test_add_point_starts_training(self, client, canvas_id, emitted):
        response = client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 10, 'y': 5, 'color': [0, 0, 255]
        })
        data = response.get_json()

        assert response.status_code == 202
        assert data['status'] == 'training_started'

        job = client.get(f"/api/training/{data['job_id']}").get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert api_server.active_canvases[canvas_id]['trained_passes'] == 20

        events = [event for event, _ in emitted]
        # 20 passes in chunks of 8
        assert events == ['training_update'] * 3 + ['training_complete']

    @pytest.mark.parametrize('body', [
        {'x': 'left', 'y': 5, 'color': [0, 0, 0]},
        {'x': 10, 'y': 5, 'color': 12},
        {'x': 10, 'y': 5, 'color': [300, 0, 0]},
        {'x': 100, 'y': 5, 'color': [0, 0, 0]},
    ])
    def test_add_point_rejects_bad_requests(self, client, canvas_id, body):
        response = client.post(f'/api/canvases/{canvas_id}/points', json=body)
        assert response.status_code == 400

    def test_train_requires_points(self, client, canvas_id):
        response = client.post(f'/api/canvases/{canvas_id}/train', json={})
        assert response.status_code == 400

    @pytest.mark.parametrize('body', [
        {'passes': 0},
        {'passes': 2.5},
        {'step_size': -1},
        {'step_size': 'fast'},
    ])
    def test_train_rejects_bad_parameters(self, client, canvas_id, body):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 1, 'y': 1, 'color': [0, 0, 0], 'train': False
        })
        response = client.post(f'/api/canvases/{canvas_id}/train', json=body)
        assert response.status_code == 400

    def test_train_runs_requested_passes(self, client, canvas_id, emitted):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 1, 'y': 1, 'color': [255, 255, 0], 'train': False
        })

        response = client.post(f'/api/canvases/{canvas_id}/train', json={
            'passes': 5, 'step_size': 0.5
        })

        assert response.status_code == 202
        job = api_server.training_jobs[response.get_json()['job_id']]
        assert job['status'] == 'completed'
        assert job['passes'] == 5
        assert job['error_rate'] is not None
        assert emitted[-1][0] == 'training_complete'

    def test_new_job_replaces_finished_job(self, client, canvas_id):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 1, 'y': 1, 'color': [0, 0, 0], 'train': False
        })
        first = client.post(f'/api/canvases/{canvas_id}/train', json={'passes': 1})
        second = client.post(f'/api/canvases/{canvas_id}/train', json={'passes': 1})

        assert first.get_json()['job_id'] not in api_server.training_jobs
        assert second.get_json()['job_id'] in api_server.training_jobs

    def test_failed_training_is_reported(self, client, canvas_id, emitted, monkeypatch):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 1, 'y': 1, 'color': [0, 0, 0], 'train': False
        })
        canvas = api_server.active_canvases[canvas_id]['canvas']

        def broken_train(**kwargs):
            raise RuntimeError('boom')

        monkeypatch.setattr(canvas, 'train', broken_train)
        response = client.post(f'/api/canvases/{canvas_id}/train', json={'passes': 3})

        job = client.get(f"/api/training/{response.get_json()['job_id']}").get_json()
        assert job['status'] == 'failed'
        assert job['error'] == 'boom'
        assert emitted[-1][0] == 'training_error'

    def test_job_of_deleted_canvas_exits_quietly(self, client, canvas_id, emitted, monkeypatch):
        """Test that a job whose canvas is deleted before it starts does nothing."""
        deferred = []
        monkeypatch.setattr(
            api_server.socketio, 'start_background_task',
            lambda target, *args, **kwargs: deferred.append((target, args, kwargs))
        )

        response = client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 10, 'y': 5, 'color': [0, 255, 0]
        })
        assert response.status_code == 202
        job_id = response.get_json()['job_id']
        assert client.delete(f'/api/canvases/{canvas_id}').status_code == 200

        assert len(deferred) == 1
        target, args, kwargs = deferred[0]
        target(*args, **kwargs)

        assert job_id not in api_server.training_jobs
        assert emitted == []

    @pytest.mark.parametrize('train', ['false', 0, None, [True]])
    def test_add_point_rejects_non_boolean_train_flag(self, client, canvas_id, train):
        response = client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 10, 'y': 5, 'color': [0, 0, 0], 'train': train
        })

        assert response.status_code == 400
        assert api_server.active_canvases[canvas_id]['canvas'].points == []
        assert api_server.training_jobs == {}

    def test_clear_points(self, client, canvas_id):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 1, 'y': 1, 'color': [0, 0, 0], 'train': False
        })
        response = client.delete(f'/api/canvases/{canvas_id}/points')
        assert response.get_json()['removed'] == 1
        assert api_server.active_canvases[canvas_id]['canvas'].points == []

    def test_unknown_job_is_404(self, client):
        assert client.get('/api/training/nope').status_code == 404


@pytest.mark.integration
class TestRendering:
    """Test image rendering and single-point prediction."""

    def test_image_returns_png_and_pixels(self, client, canvas_id):
        client.post(f'/api/canvases/{canvas_id}/points', json={
            'x': 20, 'y': 10, 'color': [255, 0, 0], 'train': False
        })

        response = client.get(f'/api/canvases/{canvas_id}/image?scale=8')
        data = response.get_json()

        assert response.status_code == 200
        assert base64.b64decode(data['image_data']).startswith(b'\x89PNG')
        assert len(data['pixels']) == 4
        assert len(data['pixels'][0]) == 8
        assert len(data['pixels'][0][0]) == 3

    @pytest.mark.parametrize('scale', ['big', '0', '100'])
    def test_image_rejects_bad_scale(self, client, canvas_id, scale):
        response = client.get(f'/api/canvases/{canvas_id}/image?scale={scale}')
        assert response.status_code == 400

    def test_predict_color(self, client, canvas_id):
        response = client.post(f'/api/canvases/{canvas_id}/predict', json={'x': 32, 'y': 16})
        data = response.get_json()

        assert response.status_code == 200
        expected = api_server.active_canvases[canvas_id]['canvas'].predict(32, 16)
        assert data['color'] == list(expected)

    def test_predict_requires_coordinates(self, client, canvas_id):
        response = client.post(f'/api/canvases/{canvas_id}/predict', json={'x': 32})
        assert response.status_code == 400
