"""Reference layers implemented using NumPy.

These layers are deliberately simple. They exist to exercise the engine
and to serve as examples of the `layer.Layer` contract.

Layers working on feature vectors (e.g., `Affine`) treat the last axis
as the feature axis and all the leading axes as batch axes.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy import stats

from .. import device as devices
from ..frontend import layer


def _expand(der, value) -> np.ndarray:
    """Broadcast a derivative, possibly a scalar weight, to the shape of value."""
    return np.broadcast_to(der, np.shape(value)).copy()


@layer.register
class Sum(layer.Layer):
    """Element-wise sum of all the inputs.

    The same variable may be listed more than once as input, in which
    case it is summed once per occurrence.
    """

    def forward(self, inputs, params):
        """Sum the inputs."""
        total = inputs[0]
        for value in inputs[1:]:
            total = np.add(total, value)
        return [total]

    def backward(self, inputs, params, der_outputs):
        """Route the output derivative to every input."""
        return [_expand(der_outputs[0], value) for value in inputs], []


@layer.register
class Scale(layer.Layer):
    """Multiplication by a constant factor."""

    config_fields = ("factor",)

    def __init__(self, factor: float = 1.0) -> None:
        self.factor = factor

    def forward(self, inputs, params):
        """Scale the input."""
        return [np.multiply(inputs[0], self.factor)]

    def backward(self, inputs, params, der_outputs):
        """Scale the output derivative."""
        return [np.multiply(_expand(der_outputs[0], inputs[0]), self.factor)], []


@layer.register
class Square(layer.Layer):
    """Element-wise square."""

    def forward(self, inputs, params):
        """Square the input."""
        return [np.square(inputs[0])]

    def backward(self, inputs, params, der_outputs):
        """Apply d(x^2)/dx = 2x."""
        return [2 * inputs[0] * der_outputs[0]], []


@layer.register
class ReLU(layer.Layer):
    """Rectified linear unit."""

    def forward(self, inputs, params):
        """Clamp negative values to zero."""
        return [np.maximum(inputs[0], 0)]

    def backward(self, inputs, params, der_outputs):
        """Let the derivative through where the input is positive."""
        return [der_outputs[0] * (inputs[0] > 0)], []


@layer.register
class Affine(layer.Layer):
    """Affine map `y = x @ W + b` over the last axis of the input.

    The parameters are the weights `W`, with shape (in_size, out_size),
    and, when `has_bias` is set, the bias `b`, with shape (out_size,).

    The weights are initialized by drawing from a normal distribution
    truncated at two standard deviations, with standard deviation
    `sqrt(2 / in_size)`, while the bias is initialized to zero.
    """

    config_fields = ("in_size", "out_size", "has_bias", "seed")

    def __init__(self, in_size: int = 1, out_size: int = 1, has_bias: bool = True, seed: int | None = None) -> None:
        self.in_size = in_size
        self.out_size = out_size
        self.has_bias = has_bias
        self.seed = seed

    def init(self) -> list[np.ndarray]:
        """Return the initial weights and, optionally, the bias."""
        scale = np.sqrt(2.0 / self.in_size)
        weights = stats.truncnorm.rvs(
            -2.0,
            2.0,
            scale=scale,
            size=(self.in_size, self.out_size),
            random_state=self.seed,
        )
        if not self.has_bias:
            return [np.asarray(weights, dtype=np.float64)]
        return [np.asarray(weights, dtype=np.float64), np.zeros(self.out_size)]

    def forward(self, inputs, params):
        """Apply the affine map."""
        y = np.matmul(inputs[0], params[0])
        if self.has_bias:
            y = y + params[1]
        return [y]

    def backward(self, inputs, params, der_outputs):
        """Compute the derivatives of the input, weights and bias."""
        x, weights = inputs[0], params[0]
        dy = np.asarray(der_outputs[0])

        # Fold the batch axes so that we always deal with matrices
        x2 = np.reshape(x, (-1, self.in_size))
        dy2 = np.reshape(np.broadcast_to(dy, np.shape(x)[:-1] + (self.out_size,)), (-1, self.out_size))

        dx = np.reshape(dy2 @ weights.T, np.shape(x))
        dweights = x2.T @ dy2
        if not self.has_bias:
            return [dx], [dweights]
        return [dx], [dweights, dy2.sum(axis=0)]


@layer.register
class Dropout(layer.Layer):
    """Randomly zero inputs, scaling the survivors by 1 / (1 - rate).

    The mask is drawn on the first forward call and reused by the
    following calls until `reset`, so that the backward pass sees the
    same mask as the forward pass. A new mask is also drawn when the
    input shape changes (e.g., a different batch size). In "test" mode
    the layer passes its input through unchanged.
    """

    config_fields = ("rate", "seed")

    def __init__(self, rate: float = 0.5, seed: int | None = None) -> None:
        self.rate = rate
        self.seed = seed
        self.mask: np.ndarray | None = None
        self._rng = np.random.default_rng(seed)

    def forward(self, inputs, params):
        """Apply the dropout mask."""
        if self.mode == "test":
            return [inputs[0]]
        if self.mask is None or self.mask.shape != np.shape(inputs[0]):
            keep = self._rng.random(np.shape(inputs[0])) >= self.rate
            self.mask = keep / (1.0 - self.rate)
        return [inputs[0] * self.mask]

    def backward(self, inputs, params, der_outputs):
        """Apply the same mask to the output derivative."""
        if self.mode == "test":
            return [_expand(der_outputs[0], inputs[0])], []
        return [der_outputs[0] * self.mask], []

    def reset(self) -> None:
        """Forget the mask so that the next forward draws a new one."""
        self.mask = None

    def move(self, device: str) -> None:
        """Move the mask to the given device."""
        if self.mask is not None:
            self.mask = devices.lookup(device).place(self.mask)

    def load(self, config) -> None:
        """Load the configuration and restart the random generator."""
        super().load(config)
        self._rng = np.random.default_rng(self.seed)
        self.mask = None


@layer.register
class SquaredError(layer.Layer):
    """Squared error loss `0.5 * sum((x - t) ** 2)` between two inputs.

    The output is a scalar. Its derivative is usually the weight given
    to the loss when backpropagating.
    """

    def forward(self, inputs: Sequence[np.ndarray], params):
        """Compute the loss."""
        diff = np.subtract(inputs[0], inputs[1])
        return [0.5 * np.sum(diff * diff)]

    def backward(self, inputs, params, der_outputs):
        """Compute the derivatives with respect to both inputs."""
        diff = np.subtract(inputs[0], inputs[1])
        der = diff * der_outputs[0]
        return [der, -der], []
