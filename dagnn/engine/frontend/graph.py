"""Network Building.

This module holds the state evaluated by the engine:

1. the variable store (`Variable`), where each variable holds a value,
a derivative, its static fanout, the precious flag, and a counter of
pending references repurposed by each pass;

2. the parameter store (`Param`);

3. the layer nodes (`LayerNode`), binding a `layer.Layer` to the
variables and parameters it reads and writes;

4. the `Network`, the ordered sequence of layer nodes plus the stores
and the flags governing evaluation.

Here's an example of what you can do with this module:

    >>> from dagnn.engine.frontend import graph
    >>> from dagnn.engine.numpybackend import layers
    >>>
    >>> net = graph.Network()
    >>> net.add_layer("fc", layers.Affine(in_size=3, out_size=2), ["x"], ["y"], ["w", "b"])
    >>> net.add_layer("act", layers.ReLU(), ["y"], ["z"])
    >>> net.init_params()

The network does not sort layers: you must add them in an order where
each layer comes after the layers producing its inputs.

Network Representation
----------------------

The `__repr__` of a network is the script that rebuilds it:

    net = graph.Network()
    net.add_layer(name='fc', block=layers.Affine(in_size=3, out_size=2, has_bias=True), ...)
    net.add_layer(name='act', block=layers.ReLU(), inputs=['y'], outputs=['z'], params=[])

Fanout
------

The fanout of a variable counts the (layer, input slot) occurrences
referencing it. A layer listing the same variable twice contributes two
to its fanout. The evaluator relies on the fanout being exact to decide
when a value is no longer needed, hence `rebuild` recomputes it after
each structural change and nothing else touches it.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from .. import device as devices
from . import layer


class UnknownVariable(Exception):
    """Raised when a variable name cannot be resolved."""


class UnknownParameter(Exception):
    """Raised when a parameter name cannot be resolved."""


class UnknownLayer(Exception):
    """Raised when a layer name cannot be resolved."""


class DuplicateLayer(Exception):
    """Raised when adding a layer whose name is already in use."""


class DuplicateProducer(Exception):
    """Raised when a variable would be produced by more than one layer."""


@dataclass
class Variable:
    """A named slot holding a value and, during backward, its derivative.

    Attributes
    ----------
        name: the variable name.
        value: the current value, or None when absent.
        der: the current derivative, or None when absent.
        fanout: the number of layer input slots reading this variable.
        precious: whether value and derivative are exempt from reclamation.
        pending_refs: forward, the readers yet to run; backward, the
            derivative contributions received so far.
    """

    name: str
    value: np.ndarray | None = None
    der: np.ndarray | None = None
    fanout: int = 0
    precious: bool = False
    pending_refs: int = 0


@dataclass
class Param:
    """A named layer parameter with its derivative."""

    name: str
    value: np.ndarray | None = None
    der: np.ndarray | None = None


@dataclass
class LayerNode:
    """A layer bound to the variables and parameters of a network.

    The `*_indexes` attributes are resolved by `Network.rebuild`. The
    timing attributes are diagnostic only.
    """

    name: str
    block: layer.Layer
    inputs: list[str]
    outputs: list[str]
    params: list[str]
    input_indexes: list[int] = field(default_factory=list)
    output_indexes: list[int] = field(default_factory=list)
    param_indexes: list[int] = field(default_factory=list)
    forward_time: float = 0.0
    backward_time: float = 0.0

    def __repr__(self) -> str:
        """Return a round-trippable representation of the layer node."""
        return (
            f"net.add_layer(name={self.name!r}, block={self.block!r}, "
            f"inputs={self.inputs!r}, outputs={self.outputs!r}, params={self.params!r})"
        )


class Network:
    """A directed acyclic graph of layers connected through variables.

    Attributes
    ----------
        layers: the layer nodes in evaluation order.
        vars: the variable store.
        params: the parameter store.
        conserve_memory: whether to drop values and derivatives as soon
            as they are no longer needed.
        param_ders_accumulate: whether backward accumulates parameter
            derivatives across passes rather than overwriting them.
        device: tag of the device where values are materialized.
        mode: the evaluation mode, either "normal" or "test".
    """

    def __init__(
        self,
        conserve_memory: bool = True,
        param_ders_accumulate: bool = False,
        device: str | None = None,
    ) -> None:
        self.layers: list[LayerNode] = []
        self.vars: list[Variable] = []
        self.params: list[Param] = []
        self.conserve_memory = conserve_memory
        self.param_ders_accumulate = param_ders_accumulate
        self.device = device if device is not None else devices.default
        self.mode = "normal"
        self._var_names: dict[str, int] = {}
        self._param_names: dict[str, int] = {}
        self._layer_names: dict[str, int] = {}

    # Construction

    def add_layer(
        self,
        name: str,
        block: layer.Layer,
        inputs: Sequence[str],
        outputs: Sequence[str],
        params: Sequence[str] = (),
    ) -> LayerNode:
        """Append a layer, creating its variables and parameters on first use.

        Raises
        ------
            DuplicateLayer: if a layer with the same name exists.
            DuplicateProducer: if one of the outputs is already produced by
                another layer (or listed twice as an output).
        """
        if name in self._layer_names:
            raise DuplicateLayer(f"network: layer '{name}' already exists")

        produced = {out for node in self.layers for out in node.outputs}
        seen: set[str] = set()
        for out in outputs:
            if out in produced or out in seen:
                raise DuplicateProducer(f"network: variable '{out}' already has a producer")
            seen.add(out)

        block.mode = self.mode
        node = LayerNode(name=name, block=block, inputs=list(inputs), outputs=list(outputs), params=list(params))
        self.layers.append(node)
        self._layer_names[name] = len(self.layers) - 1

        for varname in node.inputs + node.outputs:
            if varname not in self._var_names:
                self._var_names[varname] = len(self.vars)
                self.vars.append(Variable(name=varname))
        for paramname in node.params:
            if paramname not in self._param_names:
                self._param_names[paramname] = len(self.params)
                self.params.append(Param(name=paramname))

        self.rebuild()
        return node

    def rebuild(self) -> None:
        """Resolve the layer indexes and recompute the variables fanout."""
        for var in self.vars:
            var.fanout = 0
        for node in self.layers:
            node.input_indexes = [self._var_names[v] for v in node.inputs]
            node.output_indexes = [self._var_names[v] for v in node.outputs]
            node.param_indexes = [self._param_names[p] for p in node.params]
            for v in node.input_indexes:
                self.vars[v].fanout += 1

    # Name resolution

    def get_var_index(self, name: str) -> int:
        """Return the index of the variable with the given name.

        Raises
        ------
            UnknownVariable: if there is no such variable.
        """
        try:
            return self._var_names[name]
        except KeyError:
            raise UnknownVariable(f"network: unknown variable '{name}'")

    def get_param_index(self, name: str) -> int:
        """Return the index of the parameter with the given name.

        Raises
        ------
            UnknownParameter: if there is no such parameter.
        """
        try:
            return self._param_names[name]
        except KeyError:
            raise UnknownParameter(f"network: unknown parameter '{name}'")

    def get_layer_index(self, name: str) -> int:
        """Return the index of the layer with the given name.

        Raises
        ------
            UnknownLayer: if there is no such layer.
        """
        try:
            return self._layer_names[name]
        except KeyError:
            raise UnknownLayer(f"network: unknown layer '{name}'")

    def var(self, name: str) -> Variable:
        """Return the variable with the given name."""
        return self.vars[self.get_var_index(name)]

    def param(self, name: str) -> Param:
        """Return the parameter with the given name."""
        return self.params[self.get_param_index(name)]

    def get_inputs(self) -> list[str]:
        """Return the names of the variables that no layer produces."""
        produced = {out for node in self.layers for out in node.outputs}
        return [var.name for var in self.vars if var.name not in produced]

    def get_outputs(self) -> list[str]:
        """Return the names of the variables that no layer consumes."""
        return [var.name for var in self.vars if var.fanout == 0]

    # State management

    def init_params(self) -> None:
        """Initialize the parameters using each layer's `init`.

        Raises
        ------
            LayerOutputMismatch: if a layer returns the wrong number of values.
        """
        place = devices.lookup(self.device).place
        for node in self.layers:
            values = node.block.init()
            if len(values) != len(node.param_indexes):
                raise layer.LayerOutputMismatch(
                    f"network: layer '{node.name}' initialized {len(values)} "
                    f"parameters but declares {len(node.param_indexes)}"
                )
            for p, value in zip(node.param_indexes, values):
                self.params[p].value = place(value)

    def reset(self) -> None:
        """Drop values and derivatives and reset the layers internal state."""
        for var in self.vars:
            var.value = None
            var.der = None
        for param in self.params:
            param.der = None
        for node in self.layers:
            node.block.reset()

    def move(self, device: str) -> None:
        """Move values, derivatives, and layers internal data to a device.

        Raises
        ------
            UnsupportedDevice: if no backend is registered for the device.
        """
        place = devices.lookup(device).place
        for entry in [*self.vars, *self.params]:
            if entry.value is not None:
                entry.value = place(entry.value)
            if entry.der is not None:
                entry.der = place(entry.der)
        for node in self.layers:
            node.block.move(device)
        self.device = device

    def set_mode(self, mode: str) -> None:
        """Set the evaluation mode of the network and of its layers."""
        if mode not in layer.MODES:
            raise ValueError(f"network: unknown mode '{mode}'")
        self.mode = mode
        for node in self.layers:
            node.block.mode = mode

    # Persistence

    def save(self) -> dict[str, Any]:
        """Return a plain-data record describing the network.

        The record contains the flags, the layers configuration, the
        names of the precious variables and the parameter values.
        """
        return {
            "conserve_memory": self.conserve_memory,
            "param_ders_accumulate": self.param_ders_accumulate,
            "device": self.device,
            "mode": self.mode,
            "layers": [
                {
                    "name": node.name,
                    "kind": type(node.block).kind,
                    "config": node.block.save(),
                    "inputs": list(node.inputs),
                    "outputs": list(node.outputs),
                    "params": list(node.params),
                }
                for node in self.layers
            ],
            "precious": [var.name for var in self.vars if var.precious],
            "params": {
                param.name: devices.lookup(devices.CPU).place(param.value)
                for param in self.params
                if param.value is not None
            },
        }

    @classmethod
    def load(cls, record: dict[str, Any]) -> Network:
        """Rebuild a network from a record produced by `save`."""
        net = cls(
            conserve_memory=record.get("conserve_memory", True),
            param_ders_accumulate=record.get("param_ders_accumulate", False),
            device=record.get("device"),
        )
        for entry in record.get("layers", []):
            net.add_layer(
                entry["name"],
                layer.from_config(entry["kind"], entry.get("config", {})),
                entry.get("inputs", []),
                entry.get("outputs", []),
                entry.get("params", []),
            )
        for name in record.get("precious", []):
            net.var(name).precious = True
        place = devices.lookup(net.device).place
        for name, value in record.get("params", {}).items():
            net.param(name).value = place(value)
        net.set_mode(record.get("mode", "normal"))
        return net

    def __repr__(self) -> str:
        """Return a round-trippable representation of the network."""
        lines = [
            f"net = graph.Network(conserve_memory={self.conserve_memory}, "
            f"param_ders_accumulate={self.param_ders_accumulate}, device={self.device!r})"
        ]
        for node in self.layers:
            lines.append(repr(node))
        for var in self.vars:
            if var.precious:
                lines.append(f"net.var({var.name!r}).precious = True")
        if self.mode != "normal":
            lines.append(f"net.set_mode({self.mode!r})")
        return "\n".join(lines)

    def __str__(self) -> str:
        """Return a round-trippable representation of the network."""
        return repr(self)
