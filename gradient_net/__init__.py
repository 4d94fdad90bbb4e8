"""
gradient_net package
~~~~~~~~~~~~~~~~~~~~

Feed-forward neural network with online backpropagation and a fused bias
term, plus the gradient canvas service that teaches it to paint a color
field from a handful of colored points.
"""

from gradient_net.network import (
    InvalidInput,
    InvalidTarget,
    InvalidTopology,
    MissingForwardPass,
    Network,
    NetworkError,
    sigmoid,
    sigmoid_output_derivative,
)

__version__ = "1.0.0"

__all__ = [
    "Network",
    "NetworkError",
    "InvalidTopology",
    "InvalidInput",
    "InvalidTarget",
    "MissingForwardPass",
    "sigmoid",
    "sigmoid_output_derivative",
]
