"""
gradient.py
~~~~~~~~~~~

Gradient canvas: a set of colored points on a 2D canvas and a network that
learns to paint the whole canvas from them.

Each point becomes one training pair. Its pixel position is normalized to
``[0, 1]`` per axis and fed to the network; its RGB color, scaled to
``[0, 1]``, is the target. Rendering asks the network for the color of every
cell of a coarse grid laid over the canvas.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from matplotlib import colors as mcolors

from gradient_net.network import LayerShape, Network

# Configure module logger
logger = logging.getLogger(__name__)

# Two coordinates plus two bias slots, two hidden layers of 7 neurons with
# three bias slots each, and one output neuron per RGB channel.
DEFAULT_LAYER_SHAPES: List[LayerShape] = [(7, 4), (7, 10), (3, 10)]
DEFAULT_TRAINING_PASSES = 10_000
DEFAULT_STEP_SIZE = 1.0
DEFAULT_RENDER_SCALE = 8

Color = Tuple[int, int, int]


@dataclass(frozen=True)
class TrainingPoint:
    """A colored point placed on the canvas, in pixel coordinates."""

    x: float
    y: float
    color: Color


def map_range(
    value: float,
    start1: float,
    end1: float,
    start2: float,
    end2: float
) -> float:
    """Linearly map ``value`` from ``[start1, end1]`` to ``[start2, end2]``."""
    return start2 + (value - start1) / (end1 - start1) * (end2 - start2)


def normalize_position(
    x: float,
    y: float,
    width: float,
    height: float
) -> List[float]:
    """
    Map a canvas position to the network input.

    The position is taken relative to the canvas center, then mapped from
    ``[-size/2, size/2]`` to ``[0, 1]`` on each axis.
    """
    return [
        map_range(x - width / 2, -width / 2, width / 2, 0, 1),
        map_range(y - height / 2, -height / 2, height / 2, 0, 1),
    ]


def parse_color(value: Union[str, Sequence[int]]) -> Color:
    """
    Parse an RGB color.

    Args:
        value: ``[r, g, b]`` with integer channels in 0-255, or any color
            string matplotlib understands (``'#ff8800'``, ``'red'``, ...)

    Returns:
        ``(r, g, b)`` tuple of ints

    Raises:
        ValueError: If the color can't be parsed
    """
    if isinstance(value, str):
        # to_rgb raises ValueError for unknown color strings
        rgb = mcolors.to_rgb(value)
        return tuple(int(round(channel * 255)) for channel in rgb)

    channels = list(value)
    if len(channels) != 3:
        raise ValueError(f"Color must have 3 channels, got {len(channels)}")
    for channel in channels:
        if isinstance(channel, bool) or not isinstance(channel, (int, np.integer)):
            raise ValueError(f"Color channels must be integers, got {channel!r}")
        if not 0 <= channel <= 255:
            raise ValueError(f"Color channels must be within 0-255, got {channel}")
    return tuple(int(channel) for channel in channels)


def color_to_target(color: Color) -> List[float]:
    """Scale an RGB color to the ``[0, 1]`` network target range."""
    return [channel / 255 for channel in color]


def output_to_color(output: Sequence[float]) -> Color:
    """Scale a network output back to an RGB color, clipped to 0-255."""
    return tuple(int(np.clip(channel * 255, 0, 255)) for channel in output)


class GradientCanvas:
    """
    Colored training points and the network that learns them.

    The canvas does not synchronize access to its network. Callers that train
    and render concurrently must hold their own lock around each call.
    """

    def __init__(
        self,
        width: int,
        height: int,
        layer_shapes: Sequence[LayerShape] = DEFAULT_LAYER_SHAPES,
        *,
        network: Optional[Network] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Create an empty canvas.

        Args:
            width: Canvas width in pixels
            height: Canvas height in pixels
            layer_shapes: Topology of the network; ignored when ``network``
                is given. It must accept 2 inputs and produce 3 outputs.
            network: Prebuilt network to train
            rng: Random generator for the network's initial weights

        Raises:
            ValueError: If the size is not positive or the network can't map
                a position to a color
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Canvas size must be positive, got {width}x{height}")

        self.width = width
        self.height = height
        self.network = network if network is not None else Network(layer_shapes, rng=rng)
        if self.network.input_width < 2 or self.network.output_width != 3:
            raise ValueError(
                "Canvas network must accept 2 inputs and produce 3 outputs, "
                f"got shapes {self.network.shapes}"
            )
        self.points: List[TrainingPoint] = []

    def add_point(self, x: float, y: float, color: Union[str, Sequence[int]]) -> TrainingPoint:
        """
        Place a colored point on the canvas.

        Raises:
            ValueError: If the point lies outside the canvas or the color is
                invalid
        """
        if not (0 <= x <= self.width and 0 <= y <= self.height):
            raise ValueError(
                f"Point ({x}, {y}) lies outside the {self.width}x{self.height} canvas"
            )
        point = TrainingPoint(x=x, y=y, color=parse_color(color))
        self.points.append(point)
        logger.debug(f"Added point {point}")
        return point

    def clear(self) -> None:
        self.points.clear()

    def _training_pairs(self) -> List[Tuple[List[float], List[float]]]:
        return [
            (
                normalize_position(point.x, point.y, self.width, self.height),
                color_to_target(point.color),
            )
            for point in self.points
        ]

    def train(
        self,
        passes: int = DEFAULT_TRAINING_PASSES,
        step_size: float = DEFAULT_STEP_SIZE,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """
        Train the network on every point, ``passes`` times.

        Each pass feeds the points forward one at a time, in the order they
        were added, and backpropagates after each one.

        Args:
            passes: Number of passes over all points
            step_size: Step size handed to :meth:`Network.backpropagate`
            callback: Called after each pass with progress data
            yield_func: Called after each pass so other tasks can run

        Returns:
            Mean squared error of each pass, measured on the outputs seen
            just before each update
        """
        if passes < 0:
            raise ValueError(f"passes must be non-negative, got {passes}")

        pairs = self._training_pairs()
        history: List[float] = []
        if not pairs:
            logger.info("No points to train on")
            return history

        start_time = time.time()
        for pass_index in range(passes):
            squared_error = 0.0
            for inputs, target in pairs:
                output = self.network.feedforward(inputs)
                squared_error += float(np.mean((np.asarray(target) - output) ** 2))
                self.network.backpropagate(target, step_size)

            error = squared_error / len(pairs)
            history.append(error)

            if callback:
                callback({
                    'pass': pass_index + 1,
                    'total_passes': passes,
                    'error': error,
                    'elapsed_time': time.time() - start_time
                })

            if yield_func:
                yield_func()

        if history:
            logger.info(
                f"Trained {passes} pass(es) over {len(pairs)} point(s) in "
                f"{time.time() - start_time:.2f}s, error {history[-1]:.6f}"
            )
        return history

    def mean_squared_error(self) -> float:
        """Mean squared error of the network over all points."""
        pairs = self._training_pairs()
        if not pairs:
            return 0.0
        errors = [
            np.mean((np.asarray(target) - self.network.feedforward(inputs)) ** 2)
            for inputs, target in pairs
        ]
        return float(np.mean(errors))

    def predict(self, x: float, y: float) -> Color:
        """Color the network paints at canvas position ``(x, y)``."""
        output = self.network.feedforward(
            normalize_position(x, y, self.width, self.height)
        )
        return output_to_color(output)

    def render(self, scale: int = DEFAULT_RENDER_SCALE) -> np.ndarray:
        """
        Paint the canvas at ``1/scale`` resolution.

        Args:
            scale: Canvas pixels per rendered cell along each axis

        Returns:
            ``uint8`` array of shape ``(height // scale, width // scale, 3)``

        Raises:
            ValueError: If ``scale`` leaves no cell to render
        """
        if scale < 1:
            raise ValueError(f"scale must be at least 1, got {scale}")
        columns = self.width // scale
        rows = self.height // scale
        if columns == 0 or rows == 0:
            raise ValueError(
                f"scale {scale} is too coarse for a {self.width}x{self.height} canvas"
            )

        pixels = np.zeros((rows, columns, 3), dtype=np.uint8)
        for row in range(rows):
            for column in range(columns):
                output = self.network.feedforward(
                    normalize_position(column, row, columns, rows)
                )
                pixels[row, column] = output_to_color(output)
        return pixels
