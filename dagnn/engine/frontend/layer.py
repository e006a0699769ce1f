"""Layer capability.

A layer is the unit of computation of a network. The engine does not
know anything about the math performed by a layer: it only relies on
the contract implemented by the `Layer` abstract base class, namely:

1. `forward` maps input and parameter values to output values;

2. `backward` maps input and parameter values plus the derivatives of
the outputs to the derivatives of the inputs and of the parameters;

3. `init` produces initial parameter values;

4. `reset` clears transient internal state (e.g., a dropout mask);

5. `move` relocates internal auxiliary buffers to another device.

Layers never own the value and derivative buffers managed by the engine:
they receive references to them for the duration of a single `forward`
or `backward` call and must neither mutate nor retain them.

Configuration Records
---------------------

Each layer class declares the names of its configurable fields in the
`config_fields` class attribute. The `save` method returns a dict with
exactly these fields and `load` sets them back. Paired with `register`
and `from_config` this allows round-tripping a layer:

    >>> record = layer.save()
    >>> clone = from_config(type(layer).kind, record)

The `__repr__` of a layer is the constructor call reproducing it.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Mapping, Sequence, TypeVar

import numpy as np

MODES: tuple[str, ...] = ("normal", "test")
"""Evaluation modes a layer may be in."""


class UnknownLayerKind(Exception):
    """Raised when constructing a layer kind that has not been registered."""


class UnknownConfigField(Exception):
    """Raised when loading a configuration field the layer does not declare."""


class LayerOutputMismatch(Exception):
    """Raised when a layer returns a number of values other than declared."""


class Layer(ABC):
    """Base class for all the network layers.

    Attributes
    ----------
        kind: name under which the class is registered (set by `register`).
        config_fields: names of the fields saved and loaded by `save` and `load`.
        mode: the evaluation mode, either "normal" or "test", set by the
            network containing the layer.
    """

    kind: ClassVar[str] = ""
    config_fields: ClassVar[tuple[str, ...]] = ()

    mode: str = "normal"

    @abstractmethod
    def forward(self, inputs: Sequence[np.ndarray], params: Sequence[np.ndarray]) -> list[np.ndarray]:
        """Compute the outputs from the inputs and the parameters."""

    @abstractmethod
    def backward(
        self,
        inputs: Sequence[np.ndarray],
        params: Sequence[np.ndarray],
        der_outputs: Sequence[np.ndarray],
    ) -> tuple[list[np.ndarray], list[np.ndarray]]:
        """Compute the derivatives of the inputs and of the parameters.

        Returns
        -------
            A tuple (der_inputs, der_params) with one entry per input
            and one entry per parameter, shaped like the values.
        """

    def init(self) -> list[np.ndarray]:
        """Return initial values for the layer parameters."""
        return []

    def reset(self) -> None:
        """Clear any transient internal state."""

    def move(self, device: str) -> None:
        """Move internal auxiliary data to the given device.

        Values and derivatives are moved by the network, therefore this
        only concerns data internal to the layer.
        """

    def save(self) -> dict[str, Any]:
        """Return the configuration record of the layer."""
        return {name: getattr(self, name) for name in self.config_fields}

    def load(self, config: Mapping[str, Any]) -> None:
        """Initialize the layer from a configuration record.

        This is the opposite of `save`.

        Raises
        ------
            UnknownConfigField: if config contains an undeclared field.
        """
        for name in config:
            if name not in self.config_fields:
                raise UnknownConfigField(f"layer: {type(self).__name__} has no config field '{name}'")
        for name, value in config.items():
            setattr(self, name, value)

    def __repr__(self) -> str:
        """Return a round-trippable representation of the layer."""
        args = ", ".join(f"{name}={value!r}" for name, value in self.save().items())
        return f"layers.{type(self).__name__}({args})"


_registry: dict[str, type[Layer]] = {}
"""Maps a layer kind to the corresponding class."""

L = TypeVar("L", bound=type[Layer])


def register(cls: L) -> L:
    """Class decorator registering a layer kind under its class name."""
    cls.kind = cls.__name__
    _registry[cls.kind] = cls
    return cls


def from_config(kind: str, config: Mapping[str, Any]) -> Layer:
    """Construct a registered layer kind from a configuration record.

    Raises
    ------
        UnknownLayerKind: if the kind has not been registered.
        UnknownConfigField: if config contains an undeclared field.
    """
    try:
        cls = _registry[kind]
    except KeyError:
        raise UnknownLayerKind(f"layer: unknown layer kind '{kind}'")
    block = cls()
    block.load(config)
    return block
