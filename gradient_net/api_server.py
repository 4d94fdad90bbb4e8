"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for gradient canvases.

This module provides endpoints for:
- Creating and managing gradient canvases
- Placing colored points and training the canvas network with real-time
  progress updates via WebSockets
- Rendering the learned color field as a PNG image

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- Matplotlib for image rendering
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any

import gevent
from gevent.lock import BoundedSemaphore
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from gradient_net.network import NetworkError
from gradient_net.gradient import (
    DEFAULT_LAYER_SHAPES,
    DEFAULT_RENDER_SCALE,
    DEFAULT_STEP_SIZE,
    GradientCanvas,
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('gradient_net').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

# Passes run by a training job when the request doesn't say otherwise
TRAINING_PASSES = int(os.getenv('GRADIENT_TRAINING_PASSES', '10000'))

# Passes run while holding a canvas lock before yielding to other requests
CHUNK_PASSES = max(1, int(os.getenv('GRADIENT_CHUNK_PASSES', '250')))

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
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

# Canvases currently in memory: {canvas_id: canvas_info}
# canvas_info holds the GradientCanvas and the lock guarding its network.
active_canvases: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def canvas_summary(canvas_id: str) -> Dict[str, Any]:
    """Describe a canvas for JSON responses."""
    canvas = active_canvases[canvas_id]['canvas']
    return {
        'canvas_id': canvas_id,
        'width': canvas.width,
        'height': canvas.height,
        'layer_shapes': [list(shape) for shape in canvas.network.shapes],
        'points': [
            {'x': point.x, 'y': point.y, 'color': list(point.color)}
            for point in canvas.points
        ],
        'trained_passes': active_canvases[canvas_id]['trained_passes']
    }


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def create_canvas_image(canvas: GradientCanvas, pixels: np.ndarray) -> str:
    """
    Create a base64-encoded PNG image of a rendered canvas.

    Args:
        canvas: Canvas whose points are drawn on top of the color field
        pixels: Rendered color field from :meth:`GradientCanvas.render`

    Returns:
        Base64-encoded PNG image string
    """
    fig, ax = plt.subplots(figsize=(4, 4 * canvas.height / canvas.width))
    ax.imshow(
        pixels,
        extent=(0, canvas.width, canvas.height, 0),
        interpolation='nearest'
    )
    if canvas.points:
        ax.scatter(
            [point.x for point in canvas.points],
            [point.y for point in canvas.points],
            c=[np.array(point.color) / 255 for point in canvas.points],
            edgecolors='white',
            linewidths=1.5,
            s=60
        )
    ax.set_xlim(0, canvas.width)
    ax.set_ylim(canvas.height, 0)
    ax.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight', pad_inches=0)
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close(fig)

    return img_base64


def start_training_job(canvas_id: str, passes: int, step_size: float) -> str:
    """Register a training job and run it in the background."""
    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'canvas_id': canvas_id,
        'status': 'pending',
        'progress': 0,
        'passes': passes
    }

    logger.info(
        f"Created training job {job_id} for canvas {canvas_id}: "
        f"passes={passes}, step_size={step_size}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_canvas_task,
        canvas_id, job_id, passes, step_size
    )
    return job_id


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def train_canvas_task(
    canvas_id: str,
    job_id: str,
    passes: int,
    step_size: float
) -> None:
    """
    Background task that trains a canvas network.

    Training runs in chunks of CHUNK_PASSES passes. The canvas lock is held
    for one chunk at a time and released in between, so renders and
    predictions can run while the job is in progress. Progress updates are
    sent via WebSocket after every chunk.
    """
    # delete_canvas drops the job entry, possibly before this task runs
    job = training_jobs.get(job_id)
    if job is None:
        logger.warning(f"Training job {job_id} was removed before it started")
        return

    canvas_info = active_canvases.get(canvas_id)
    if canvas_info is None:
        job['status'] = 'failed'
        job['error'] = 'Canvas not found'
        logger.warning(f"Training job {job_id} lost its canvas {canvas_id}")
        return

    canvas: GradientCanvas = canvas_info['canvas']
    lock: BoundedSemaphore = canvas_info['lock']

    try:
        logger.info(f"Starting training for job {job_id}")
        job['status'] = 'training'

        completed = 0
        error = None
        while completed < passes:
            chunk = min(CHUNK_PASSES, passes - completed)
            with lock:
                history = canvas.train(passes=chunk, step_size=step_size)
            completed += chunk
            canvas_info['trained_passes'] += chunk
            if history:
                error = history[-1]

            progress = (completed / passes) * 100
            job['progress'] = progress
            job['error_rate'] = error

            # Send update to connected clients via WebSocket
            socketio.emit('training_update', {
                'job_id': job_id,
                'canvas_id': canvas_id,
                'pass': completed,
                'total_passes': passes,
                'error_rate': error,
                'progress': progress
            })

            # Let gevent send the message and serve other requests
            gevent.sleep(0)

        job['status'] = 'completed'
        job['progress'] = 100

        logger.info(f"Training completed for job {job_id}: error {error}")

        # Notify clients that training is complete
        socketio.emit('training_complete', {
            'job_id': job_id,
            'canvas_id': canvas_id,
            'status': 'completed',
            'error_rate': error,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'canvas_id': canvas_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


def cleanup_finished_training_jobs(canvas_id: str) -> None:
    """
    Remove completed or failed training jobs of a canvas from memory.

    Called before a canvas starts a new job, so training_jobs keeps at most
    the latest finished job per canvas and doesn't grow indefinitely.
    """
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('canvas_id') == canvas_id
        and job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.debug(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Returns counts of active canvases and training jobs that are
    currently in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_canvases': len(active_canvases),
        'training_jobs': active_training
    }), 200


@app.route('/api/canvases', methods=['POST'])
def create_canvas():
    """
    Create a new gradient canvas.

    Request body:
        {
            'width': 400,
            'height': 400,
            'layer_shapes': [[7, 4], [7, 10], [3, 10]]  # optional
        }

    Returns:
        JSON describing the canvas, including its canvas_id
    """
    data = request.get_json(silent=True) or {}
    width = data.get('width', 400)
    height = data.get('height', 400)
    layer_shapes = data.get('layer_shapes', DEFAULT_LAYER_SHAPES)

    if not isinstance(width, int) or not isinstance(height, int):
        return jsonify({'error': 'width and height must be integers'}), 400
    if not isinstance(layer_shapes, list) or not all(
        isinstance(shape, (list, tuple)) for shape in layer_shapes
    ):
        logger.warning(f"Invalid layer shapes requested: {layer_shapes}")
        return jsonify({
            'error': 'layer_shapes must be a list of [output, input] pairs'
        }), 400

    try:
        canvas = GradientCanvas(width, height, layer_shapes)
    except (NetworkError, ValueError) as e:
        logger.warning(f"Rejected canvas {width}x{height} {layer_shapes}: {e}")
        return jsonify({'error': str(e)}), 400

    canvas_id = str(uuid.uuid4())
    active_canvases[canvas_id] = {
        'canvas': canvas,
        'lock': BoundedSemaphore(),
        'trained_passes': 0
    }

    logger.info(
        f"Created canvas {canvas_id} ({width}x{height}) with layer shapes "
        f"{canvas.network.shapes}"
    )

    response = canvas_summary(canvas_id)
    response['status'] = 'created'
    return jsonify(response), 201


@app.route('/api/canvases', methods=['GET'])
def list_canvases():
    """List all canvases in memory."""
    return jsonify({
        'canvases': [canvas_summary(cid) for cid in active_canvases]
    }), 200


@app.route('/api/canvases/<canvas_id>', methods=['GET'])
def get_canvas(canvas_id: str):
    if canvas_id not in active_canvases:
        return jsonify({'error': 'Canvas not found'}), 404
    return jsonify(canvas_summary(canvas_id)), 200


@app.route('/api/canvases/<canvas_id>', methods=['DELETE'])
def delete_canvas(canvas_id: str):
    """Delete a canvas and forget its training jobs."""
    if canvas_id not in active_canvases:
        logger.warning(f"Delete attempted for non-existent canvas: {canvas_id}")
        return jsonify({'error': 'Canvas not found'}), 404

    del active_canvases[canvas_id]
    for job_id in [
        jid for jid, job in training_jobs.items()
        if job.get('canvas_id') == canvas_id
    ]:
        del training_jobs[job_id]

    logger.info(f"Deleted canvas {canvas_id}")
    return jsonify({'canvas_id': canvas_id, 'deleted': True}), 200


@app.route('/api/canvases/<canvas_id>/points', methods=['POST'])
def add_point(canvas_id: str):
    """
    Place a colored point on a canvas.

    Request body:
        {
            'x': 120,
            'y': 80,
            'color': [255, 0, 0],  # or '#ff0000'
            'train': true          # optional, starts a training job
        }

    Returns:
        JSON with the point, plus job_id when training started
    """
    if canvas_id not in active_canvases:
        logger.warning(f"Point added to non-existent canvas: {canvas_id}")
        return jsonify({'error': 'Canvas not found'}), 404

    data = request.get_json(silent=True) or {}
    x = data.get('x')
    y = data.get('y')
    color = data.get('color')
    train = data.get('train', True)

    if not is_number(x) or not is_number(y):
        return jsonify({'error': 'x and y must be numbers'}), 400
    if not isinstance(color, (str, list)):
        return jsonify({'error': 'color must be [r, g, b] or a color string'}), 400
    if not isinstance(train, bool):
        return jsonify({'error': 'train must be a boolean'}), 400

    canvas_info = active_canvases[canvas_id]
    try:
        with canvas_info['lock']:
            point = canvas_info['canvas'].add_point(x, y, color)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    response: Dict[str, Any] = {
        'canvas_id': canvas_id,
        'point': {'x': point.x, 'y': point.y, 'color': list(point.color)}
    }

    if not train:
        return jsonify(response), 201

    cleanup_finished_training_jobs(canvas_id)
    response['job_id'] = start_training_job(canvas_id, TRAINING_PASSES, DEFAULT_STEP_SIZE)
    response['status'] = 'training_started'
    return jsonify(response), 202


@app.route('/api/canvases/<canvas_id>/points', methods=['DELETE'])
def clear_points(canvas_id: str):
    """Remove every point from a canvas. The network keeps its weights."""
    if canvas_id not in active_canvases:
        return jsonify({'error': 'Canvas not found'}), 404

    canvas_info = active_canvases[canvas_id]
    with canvas_info['lock']:
        removed = len(canvas_info['canvas'].points)
        canvas_info['canvas'].clear()

    logger.info(f"Cleared {removed} point(s) from canvas {canvas_id}")
    return jsonify({'canvas_id': canvas_id, 'removed': removed}), 200


@app.route('/api/canvases/<canvas_id>/train', methods=['POST'])
def train_canvas(canvas_id: str):
    """
    Start training a canvas network in the background.

    Request body (all optional):
        {
            'passes': 10000,
            'step_size': 1.0
        }

    Returns:
        JSON with job_id, canvas_id, and status
    """
    if canvas_id not in active_canvases:
        logger.warning(f"Training requested for non-existent canvas: {canvas_id}")
        return jsonify({'error': 'Canvas not found'}), 404

    data = request.get_json(silent=True) or {}
    passes = data.get('passes', TRAINING_PASSES)
    step_size = data.get('step_size', DEFAULT_STEP_SIZE)

    # Validate training parameters
    if not isinstance(passes, int) or isinstance(passes, bool) or passes < 1:
        return jsonify({'error': 'passes must be a positive integer'}), 400
    if not is_number(step_size) or step_size <= 0:
        return jsonify({'error': 'step_size must be a positive number'}), 400
    if not active_canvases[canvas_id]['canvas'].points:
        return jsonify({'error': 'Canvas has no points to train on'}), 400

    cleanup_finished_training_jobs(canvas_id)
    job_id = start_training_job(canvas_id, passes, float(step_size))

    return jsonify({
        'job_id': job_id,
        'canvas_id': canvas_id,
        'status': 'training_started'
    }), 202


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/canvases/<canvas_id>/image', methods=['GET'])
def get_canvas_image(canvas_id: str):
    """
    Render the color field learned by a canvas network.

    Query parameters:
        scale: canvas pixels per rendered cell (default 8)

    Returns:
        JSON with a base64 PNG image and the raw pixel grid
    """
    if canvas_id not in active_canvases:
        return jsonify({'error': 'Canvas not found'}), 404

    try:
        scale = int(request.args.get('scale', DEFAULT_RENDER_SCALE))
    except ValueError:
        return jsonify({'error': 'scale must be an integer'}), 400

    canvas_info = active_canvases[canvas_id]
    canvas: GradientCanvas = canvas_info['canvas']
    try:
        with canvas_info['lock']:
            pixels = canvas.render(scale)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    try:
        image_data = create_canvas_image(canvas, pixels)
    except Exception as e:
        logger.exception(f"Error rendering canvas {canvas_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'canvas_id': canvas_id,
        'scale': scale,
        'image_data': image_data,
        'pixels': pixels.tolist()
    }), 200


@app.route('/api/canvases/<canvas_id>/predict', methods=['POST'])
def predict_color(canvas_id: str):
    """
    Return the color the network paints at one canvas position.

    Request body:
        {'x': 120, 'y': 80}
    """
    if canvas_id not in active_canvases:
        return jsonify({'error': 'Canvas not found'}), 404

    data = request.get_json(silent=True) or {}
    x = data.get('x')
    y = data.get('y')
    if not is_number(x) or not is_number(y):
        return jsonify({'error': 'x and y must be numbers'}), 400

    canvas_info = active_canvases[canvas_id]
    with canvas_info['lock']:
        color = canvas_info['canvas'].predict(x, y)

    return jsonify({'canvas_id': canvas_id, 'x': x, 'y': y, 'color': list(color)}), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    # Check if running in cloud environment (Railway, etc.)
    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    # Start the server with WebSocket support
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()
