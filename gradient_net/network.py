"""
network.py
~~~~~~~~~~

A fully-connected feed-forward neural network trained online, one example at
a time, by backpropagation.

Biases are not stored separately. A layer whose weight matrix is wider than
the vector feeding it treats every extra column as a bias: the column is fed a
constant input of 1.0. A layer shaped ``(3, 10)`` on top of a layer with 7
neurons therefore has 7 real weights and 3 bias weights per neuron.

The activation derivative is always expressed in terms of the activated
output ``y`` rather than the pre-activation sum, e.g. ``y * (1 - y)`` for the
sigmoid.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

# Configure module logger
logger = logging.getLogger(__name__)

ScalarFunction = Callable[[float], float]
LayerShape = Tuple[int, int]


class NetworkError(Exception):
    """Base class for misuse of a :class:`Network`."""


class InvalidTopology(NetworkError, ValueError):
    """A layer cannot consume every output of the layer before it."""


class InvalidInput(NetworkError, ValueError):
    """Forward pass input is wider than the first layer."""


class InvalidTarget(NetworkError, ValueError):
    """Backward pass target does not match the last output."""


class MissingForwardPass(NetworkError, RuntimeError):
    """Backward pass requested before any forward pass."""


def sigmoid(z: float) -> float:
    """The logistic function."""
    return 1.0 / (1.0 + np.exp(-z))


def sigmoid_output_derivative(y: float) -> float:
    """Derivative of the sigmoid, given its output ``y = sigmoid(z)``."""
    return y * (1.0 - y)


def layer_inputs(activation: np.ndarray, width: int) -> np.ndarray:
    """
    Resolve every column of a ``width``-wide weight matrix to its input value.

    Column ``x`` reads ``activation[x]`` when ``x < len(activation)`` and is a
    bias column fed with 1.0 otherwise. Both the forward pass and the weight
    update go through this function, so they always agree on which columns
    are biases.

    Args:
        activation: Live activation vector feeding the layer
        width: Number of columns in the layer's weight matrix

    Returns:
        Vector of length ``width``
    """
    bias_columns = width - len(activation)
    return np.concatenate([activation, np.ones(bias_columns)])


class Network:
    """
    Feed-forward network with fused bias columns.

    Attributes:
        shapes: ``(output_count, input_count)`` per layer
        weights: One ``output_count x input_count`` matrix per layer
        activations: Vectors left by the last forward pass; index 0 is the
            raw input, index ``L + 1`` the output of layer ``L``. Empty until
            :meth:`feedforward` runs.

    The instance holds no lock. ``feedforward`` and ``backpropagate`` must be
    called in pairs from a single thread, or under a lock owned by the caller.
    """

    def __init__(
        self,
        layer_shapes: Sequence[LayerShape],
        activation: ScalarFunction = sigmoid,
        derivative: ScalarFunction = sigmoid_output_derivative,
        *,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Build the network and draw its weights.

        Args:
            layer_shapes: ``(output_count, input_count)`` for each layer, in
                order. Every layer after the first must be at least as wide
                as the previous layer's output count.
            activation: Scalar activation function
            derivative: Derivative of ``activation`` as a function of the
                activated output
            rng: Random generator used for weight initialisation

        Raises:
            InvalidTopology: If the layer shapes cannot be chained
        """
        self.activation = activation
        self.derivative = derivative
        self.shapes = self._validate_shapes(layer_shapes)
        self.activations: List[np.ndarray] = []

        rng = rng if rng is not None else np.random.default_rng()
        # Independent uniform draws in [0, 1)
        self.weights: List[np.ndarray] = [
            rng.random((outputs, inputs)) for outputs, inputs in self.shapes
        ]

        logger.debug(f"Created network with layer shapes {self.shapes}")

    @staticmethod
    def _validate_shapes(layer_shapes: Sequence[LayerShape]) -> List[LayerShape]:
        shapes = [tuple(shape) for shape in layer_shapes]
        if not shapes:
            raise InvalidTopology("Network needs at least one layer.")

        for layer, shape in enumerate(shapes):
            if len(shape) != 2 or not all(
                isinstance(count, (int, np.integer)) and count > 0
                for count in shape
            ):
                raise InvalidTopology(
                    f"Shape of layer {layer} must be two positive integers, "
                    f"got {shape}."
                )
            if layer > 0 and shape[1] < shapes[layer - 1][0]:
                raise InvalidTopology(
                    f"Input of layer {layer} ({shape[1]}) can't be lower than "
                    f"output of layer {layer - 1} ({shapes[layer - 1][0]})."
                )

        return [(int(outputs), int(inputs)) for outputs, inputs in shapes]

    @property
    def input_width(self) -> int:
        """Largest input accepted by :meth:`feedforward`."""
        return self.shapes[0][1]

    @property
    def output_width(self) -> int:
        return self.shapes[-1][0]

    def _activate(self, sums: np.ndarray) -> np.ndarray:
        return np.array([self.activation(value) for value in sums], dtype=float)

    def _derive(self, outputs: np.ndarray) -> np.ndarray:
        return np.array([self.derivative(value) for value in outputs], dtype=float)

    def feedforward(self, signal: Sequence[float]) -> np.ndarray:
        """
        Propagate ``signal`` through every layer.

        The signal may be shorter than the first layer; the remaining columns
        act as biases.

        Args:
            signal: Input values

        Returns:
            Copy of the output layer's activations

        Raises:
            InvalidInput: If the input is not flat or is wider than the first
                layer
        """
        if np.ndim(signal) != 1:
            raise InvalidInput(
                f"Input must be a flat sequence, got {np.ndim(signal)} dimension(s)."
            )

        values = np.array(signal, dtype=float)
        if len(values) > self.input_width:
            raise InvalidInput(
                f"Input length {len(values)} exceeds the first layer's "
                f"input width {self.input_width}."
            )

        # Published only once every layer has been computed
        activations = [values]
        for weights in self.weights:
            inputs = layer_inputs(activations[-1], weights.shape[1])
            activations.append(self._activate(weights @ inputs))
        self.activations = activations

        output = activations[-1]
        if not np.all(np.isfinite(output)):
            logger.warning(f"Network produced non-finite output {output.tolist()}")

        return output.copy()

    def backpropagate(self, target: Sequence[float], step_size: float = 0.7) -> None:
        """
        Apply one training step using the activations of the last forward pass.

        Every delta is computed from the current weights before any weight
        changes. The update *adds* ``step_size * gradient``: the output delta
        uses ``target - output``, so adding climbs ``-error**2``. Flipping
        either sign alone makes training diverge.

        Args:
            target: Expected output for the last input
            step_size: Multiplier applied to every gradient

        Raises:
            MissingForwardPass: If :meth:`feedforward` was never called
            InvalidTarget: If ``target`` is not as long as the last output
        """
        if not self.activations:
            raise MissingForwardPass(
                "backpropagate() needs the activations of a prior feedforward()."
            )

        expected = np.array(target, dtype=float).reshape(-1)
        output = self.activations[-1]
        if len(expected) != len(output):
            raise InvalidTarget(
                f"Target length {len(expected)} must equal output length "
                f"{len(output)}."
            )

        deltas: List[np.ndarray] = [np.empty(0)] * len(self.weights)
        deltas[-1] = (expected - output) * self._derive(output)

        # Bias columns have no upstream neuron, so only the first
        # output_count columns of the next layer carry error back.
        for layer in range(len(self.weights) - 2, -1, -1):
            neurons = self.shapes[layer][0]
            downstream = self.weights[layer + 1][:, :neurons]
            error = downstream.T @ deltas[layer + 1]
            deltas[layer] = error * self._derive(self.activations[layer + 1])

        for layer, weights in enumerate(self.weights):
            inputs = layer_inputs(self.activations[layer], weights.shape[1])
            weights += step_size * np.outer(deltas[layer], inputs)
