"""Network Executor.

An evaluator running a network forward and, optionally, backward. The
layers are evaluated in the order in which they have been added to the
network, which must be a topological order, and in reverse order when
computing derivatives.

The forward pass (see `forward_layer`) reclaims memory: when the network
conserves memory and we are not computing derivatives, each variable
counts its readers still to run (initialized from its fanout) and its
value is dropped once the last reader has gathered it.

The backward pass (see `backward_layer`) accumulates derivatives: the
same counter now counts the contributions a variable has received, so
that the first contribution overwrites the derivative left from earlier
passes and the following ones are summed to it. Summing is always done
out of place, so layers may safely return the same array for more than
one input.

The backward pass starts from the output derivatives passed to
`evaluate`. Layers having any output without a derivative are skipped,
which is how auxiliary outputs (e.g., metrics) are excluded from
backpropagation. When derivatives are given for several outputs, the
result is the derivative of their weighted sum.

The executor is fail-stop. If a layer raises, the exception propagates
and the network is left in a partially evaluated state: call `reset` on
the network or evaluate it again from scratch.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from .. import compileflags
from .. import device as devices
from ..frontend import graph
from ..frontend.layer import LayerOutputMismatch

Bindings = Mapping[str, Any] | Sequence[tuple[str, Any]]
"""Type alias for the (name, value) pairs passed to `evaluate`."""

__all__ = ["Bindings", "LayerOutputMismatch", "State", "backward_layer", "evaluate", "forward_layer"]


def _print_layer(node: graph.LayerNode, phase: str) -> None:
    """Print a layer before evaluation."""
    print(f"# {phase}: {node!r}")


def _print_value(label: str, value: Any) -> None:
    """Print a value after evaluation."""
    print(f"# {label}:")
    if value is None:
        print("#   None")
        return

    # 1. the shape and dtype are invaluable when debugging
    if hasattr(value, "shape"):
        print(f"#   shape: {value.shape}")
    if hasattr(value, "dtype"):
        print(f"#   dtype: {value.dtype}")

    # 2. give the user a sense of the value
    print("\n".join("#   " + line for line in str(value).splitlines()))


def _pairs(bindings: Bindings | None) -> list[tuple[str, Any]]:
    if bindings is None:
        return []
    if isinstance(bindings, Mapping):
        return list(bindings.items())
    return list(bindings)


@dataclass
class State:
    """
    The network executor state.

    Attributes
    ----------
        net: the network being evaluated. The executor has exclusive
            mutation rights over its stores during `evaluate`.
        flags: Bitmask containing debug flags (e.g., compileflags.TRACE) set
            by default using the `DAGNN_ENGINE_FLAGS` environment
            variable as documented by the `compileflags` package docs.
        computing_derivative: whether the current evaluation includes a
            backward pass. Set by `evaluate`.
    """

    net: graph.Network
    flags: int = compileflags.defaults
    computing_derivative: bool = False


def _after_step(state: State, label: str, names: Iterable[str], values: Iterable[Any]) -> None:
    """Honor the trace and break flags after running a layer."""
    if state.flags & compileflags.TRACE != 0:
        for name, value in zip(names, values):
            _print_value(f"{label} {name}", value)
        print("")
    if state.flags & compileflags.BREAK != 0:
        input("# executor: press any key to continue...")
        print("")


def evaluate(state: State, inputs: Bindings, der_outputs: Bindings | None = None) -> None:
    """Evaluate the network forward and, if requested, backward.

    After evaluation, read the results from the variables of the network
    (e.g., `state.net.var("z").value`) and the parameter derivatives
    from its parameters.

    Args:
        state: The executor state.
        inputs: (name, value) pairs assigning the input variables.
        der_outputs: (name, derivative) pairs assigning the derivative of
            the outputs to backpropagate from. A scalar derivative acts as
            the weight of the corresponding output. Omit an output, or
            bind it to None, to exclude it from backpropagation. When no
            derivative remains, only the forward pass runs.

    Raises
    ------
        UnknownVariable: If a name cannot be resolved. Names are resolved
            before modifying the network.
        UnsupportedDevice: If the network device has no registered backend.
        LayerOutputMismatch: If a layer returns the wrong number of values.
    """
    net = state.net

    # 1. resolve all the names before touching the stores
    input_bindings = [(net.get_var_index(name), value) for name, value in _pairs(inputs)]
    der_bindings = [(net.get_var_index(name), value) for name, value in _pairs(der_outputs)]
    place = devices.lookup(net.device).place

    # a None derivative excludes the output like an omitted one
    der_bindings = [(v, value) for v, value in der_bindings if value is not None]

    # 2. honor the dump flag
    if state.flags & compileflags.DUMP != 0:
        print(str(net))
        print("")

    # 3. set the input values
    state.computing_derivative = len(der_bindings) > 0
    for v, value in input_bindings:
        net.vars[v].value = place(value)
        if state.flags & compileflags.TRACE != 0:
            _print_value(f"input {net.vars[v].name}", net.vars[v].value)

    # 4. forward pass
    for var in net.vars:
        var.pending_refs = var.fanout
    for node in net.layers:
        start = time.perf_counter()
        forward_layer(state, node)
        node.forward_time = time.perf_counter() - start

    if not state.computing_derivative:
        return

    # 5. set the output derivatives, making sure that derivatives left
    # over by previous passes do not leak into this one
    for var in net.vars:
        var.der = None
    for v, value in der_bindings:
        net.vars[v].der = place(value)

    # 6. backward pass
    for var in net.vars:
        var.pending_refs = 0
    for node in reversed(net.layers):
        start = time.perf_counter()
        backward_layer(state, node)
        node.backward_time = time.perf_counter() - start


def forward_layer(state: State, node: graph.LayerNode) -> None:
    """Run a layer forward and drop the inputs it was the last reader of.

    Each occurrence of a variable among the layer inputs counts as one
    reference, consistently with how the fanout is computed.

    Raises
    ------
        LayerOutputMismatch: If the layer returns the wrong number of outputs.
    """
    net = state.net
    if state.flags & compileflags.TRACE != 0:
        _print_layer(node, "forward")

    # 1. gather the inputs, then release them if no longer needed
    inputs = [net.vars[v].value for v in node.input_indexes]
    if not state.computing_derivative and net.conserve_memory:
        for v in node.input_indexes:
            var = net.vars[v]
            if var.precious:
                continue
            var.pending_refs -= 1
            if var.pending_refs == 0:
                var.value = None

    # 2. evaluate the layer
    params = [net.params[p].value for p in node.param_indexes]
    outputs = node.block.forward(inputs, params)
    if len(outputs) != len(node.output_indexes):
        raise LayerOutputMismatch(
            f"executor: layer '{node.name}' returned {len(outputs)} outputs "
            f"but declares {len(node.output_indexes)}"
        )

    # 3. store the outputs (we're their only producer)
    for v, value in zip(node.output_indexes, outputs):
        net.vars[v].value = value

    _after_step(state, "output", node.outputs, outputs)


def backward_layer(state: State, node: graph.LayerNode) -> bool:
    """Run a layer backward and accumulate the derivatives it produces.

    Returns
    -------
        False if the layer was skipped because one of its outputs has no
        derivative, True otherwise.

    Raises
    ------
        LayerOutputMismatch: If the layer returns the wrong number of derivatives.
    """
    net = state.net

    # 1. skip the layer unless all of its outputs are being backpropagated
    inputs = [net.vars[v].value for v in node.input_indexes]
    der_outputs = [net.vars[v].der for v in node.output_indexes]
    if any(der is None for der in der_outputs):
        return False

    if state.flags & compileflags.TRACE != 0:
        _print_layer(node, "backward")

    # 2. this layer was the last user of its outputs, so release them
    if net.conserve_memory:
        for v in node.output_indexes:
            var = net.vars[v]
            if var.precious:
                continue
            var.der = None
            var.value = None

    # 3. compute the derivatives of the inputs and of the parameters
    params = [net.params[p].value for p in node.param_indexes]
    der_inputs, der_params = node.block.backward(inputs, params, der_outputs)
    if len(der_inputs) != len(node.input_indexes) or len(der_params) != len(node.param_indexes):
        raise LayerOutputMismatch(
            f"executor: layer '{node.name}' returned {len(der_inputs)} input and "
            f"{len(der_params)} parameter derivatives but declares "
            f"{len(node.input_indexes)} and {len(node.param_indexes)}"
        )

    # 4. accumulate the derivatives of the inputs: the first contribution
    # overwrites and each contribution bumps the counter
    for v, der in zip(node.input_indexes, der_inputs):
        var = net.vars[v]
        if var.pending_refs == 0:
            var.der = der
        else:
            var.der = np.add(var.der, der)
        var.pending_refs += 1

    # 5. same for the parameters, subject to the accumulation policy
    for p, der in zip(node.param_indexes, der_params):
        param = net.params[p]
        if param.der is None or not net.param_ders_accumulate:
            param.der = der
        else:
            param.der = np.add(param.der, der)

    _after_step(state, "der", node.inputs + node.params, [*der_inputs, *der_params])
    return True
