"""Tests for the dagnn.engine.numpybackend.executor module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from dagnn.engine import compileflags
from dagnn.engine.frontend import graph, layer
from dagnn.engine.numpybackend import executor, layers


class Fork(layer.Layer):
    """Layer with two outputs, x and 2x, used for writing tests."""

    def forward(self, inputs, params):
        return [inputs[0], 2 * inputs[0]]

    def backward(self, inputs, params, der_outputs):
        return [der_outputs[0] + 2 * der_outputs[1]], []


class Broken(layer.Layer):
    """Layer returning more values than declared, used for writing tests."""

    def forward(self, inputs, params):
        return [inputs[0], inputs[0]]

    def backward(self, inputs, params, der_outputs):
        return [der_outputs[0], der_outputs[0]], []


class Failing(layer.Layer):
    """Layer whose operator always fails, used for writing tests."""

    def forward(self, inputs, params):
        raise ValueError("shape mismatch")

    def backward(self, inputs, params, der_outputs):
        raise ValueError("shape mismatch")


def _scenario() -> graph.Network:
    """Build x -> L1 -> y, y -> L2 -> z, y -> L3 -> w."""
    net = graph.Network(conserve_memory=True)
    net.add_layer("L1", layers.Scale(factor=2.0), ["x"], ["y"])
    net.add_layer("L2", layers.Square(), ["y"], ["z"])
    net.add_layer("L3", layers.Scale(factor=3.0), ["y"], ["w"])
    net.var("z").precious = True
    net.var("w").precious = True
    return net


def test_end_to_end_scenario():
    """Forward drops y, then backward sums the contributions to y."""
    net = _scenario()
    assert net.var("y").fanout == 2

    # Forward only
    state = executor.State(net)
    x = np.array([1.0, 2.0, 3.0])
    executor.evaluate(state, [("x", x)])
    assert net.var("y").value is None
    assert net.var("x").value is None
    assert np.array_equal(net.var("z").value, np.array([4.0, 16.0, 36.0]))
    assert np.array_equal(net.var("w").value, np.array([6.0, 12.0, 18.0]))

    # Forward and backward, keeping y around to inspect it
    net.var("y").precious = True
    executor.evaluate(state, [("x", x)], [("z", 1), ("w", 1)])
    y = 2 * x
    from_l2 = 2 * y
    from_l3 = 3.0
    assert np.allclose(net.var("y").der, from_l2 + from_l3)
    assert np.allclose(net.var("x").der, 2 * (from_l2 + from_l3))


def test_memory_conservation():
    """Only precious variables and final outputs survive a conserving forward."""
    net = graph.Network(conserve_memory=True)
    net.add_layer("a", layers.Scale(factor=2.0), ["x"], ["h1"])
    net.add_layer("b", layers.ReLU(), ["h1"], ["h2"])
    net.add_layer("c", layers.Sum(), ["h2", "h1"], ["out"])

    state = executor.State(net)
    executor.evaluate(state, {"x": np.array([-1.0, 2.0])})
    for name in ("x", "h1", "h2"):
        assert net.var(name).value is None, name
    assert np.array_equal(net.var("out").value, np.array([-2.0, 8.0]))

    # Without conserving memory everything stays around
    net.conserve_memory = False
    executor.evaluate(state, {"x": np.array([-1.0, 2.0])})
    assert np.array_equal(net.var("x").value, np.array([-1.0, 2.0]))
    assert np.array_equal(net.var("h1").value, np.array([-2.0, 4.0]))
    assert np.array_equal(net.var("h2").value, np.array([0.0, 4.0]))

    # Precious variables survive even when conserving memory
    net.conserve_memory = True
    net.var("h1").precious = True
    executor.evaluate(state, {"x": np.array([-1.0, 2.0])})
    assert np.array_equal(net.var("h1").value, np.array([-2.0, 4.0]))
    assert net.var("h2").value is None


def test_no_reclamation_when_computing_derivative():
    """Values needed by backward are kept during the forward pass."""
    net = _scenario()
    seen = []

    class Spy(layers.Square):
        def backward(self, inputs, params, der_outputs):
            seen.append(inputs[0])
            return super().backward(inputs, params, der_outputs)

    net.layers[1].block = Spy()
    executor.evaluate(executor.State(net), [("x", [1.0, 2.0, 3.0])], [("z", 1), ("w", 1)])
    assert np.array_equal(seen[0], np.array([2.0, 4.0, 6.0]))


def test_backward_releases_outputs():
    """Backward drops the value and derivative of non precious outputs."""
    net = graph.Network(conserve_memory=True)
    net.add_layer("a", layers.Scale(factor=2.0), ["x"], ["h"])
    net.add_layer("b", layers.Square(), ["h"], ["out"])

    executor.evaluate(executor.State(net), [("x", [1.0, 2.0])], [("out", 1)])
    assert net.var("h").value is None
    assert net.var("h").der is None
    assert net.var("out").value is None
    assert net.var("out").der is None
    assert np.allclose(net.var("x").der, [8.0, 16.0])


def test_gradient_accumulation_for_multiple_consumers():
    """A variable read by two layers receives the sum of both derivatives."""
    x = np.array([1.0, -2.0, 3.0])

    def build(order: list[str]) -> graph.Network:
        net = graph.Network()
        net.add_layer("src", layers.Scale(factor=1.0), ["x"], ["y"])
        consumers = {
            "A": (layers.Square(), ["y"], ["a"]),
            "B": (layers.Scale(factor=-5.0), ["y"], ["b"]),
        }
        for name in order:
            block, inputs, outputs = consumers[name]
            net.add_layer(name, block, inputs, outputs)
        net.var("y").precious = True
        return net

    results = []
    for order in (["A", "B"], ["B", "A"]):
        net = build(order)
        executor.evaluate(executor.State(net), [("x", x)], [("a", np.ones(3)), ("b", np.ones(3))])
        results.append(net.var("y").der)

    expected = 2 * x + (-5.0)
    assert np.allclose(results[0], expected)
    assert np.array_equal(results[0], results[1])


def test_repeated_backward_does_not_accumulate_stale_derivatives():
    """The first contribution of each pass overwrites the derivative."""
    net = _scenario()
    net.conserve_memory = False
    state = executor.State(net)
    for _ in range(3):
        executor.evaluate(state, [("x", [1.0, 2.0, 3.0])], [("z", 1), ("w", 1)])
        assert np.allclose(net.var("y").der, [7.0, 11.0, 15.0])
        assert np.allclose(net.var("x").der, [14.0, 22.0, 30.0])


def test_duplicate_inputs():
    """Each occurrence of a duplicated input counts independently."""
    net = graph.Network(conserve_memory=True)
    net.add_layer("double", layers.Sum(), ["x", "x"], ["y"])
    net.add_layer("again", layers.Sum(), ["y", "x"], ["z"])
    assert net.var("x").fanout == 3

    state = executor.State(net)
    x = np.array([1.0, 2.0])
    executor.evaluate(state, [("x", x)])
    assert np.array_equal(net.var("z").value, 3 * x)
    assert net.var("x").value is None

    executor.evaluate(state, [("x", x)], [("z", np.array([1.0, 10.0]))])
    assert np.array_equal(net.var("x").der, np.array([3.0, 30.0]))


def test_multi_objective_equivalence():
    """Weighted objectives backpropagate like their weighted sum."""
    x = np.array([[0.5, -1.0, 2.0], [1.5, 0.0, -0.5]])
    t1 = np.array([[1.0, 0.0], [0.0, 1.0]])
    t2 = np.array([[-1.0, 2.0], [0.5, 0.5]])
    w1, w2 = 0.3, 2.0

    def build() -> graph.Network:
        net = graph.Network()
        net.add_layer("fc", layers.Affine(in_size=3, out_size=2, seed=4), ["x"], ["h"], ["fc_w", "fc_b"])
        net.add_layer("loss1", layers.SquaredError(), ["h", "t1"], ["o1"])
        net.add_layer("loss2", layers.SquaredError(), ["h", "t2"], ["o2"])
        net.init_params()
        return net

    multi = build()
    executor.evaluate(executor.State(multi), {"x": x, "t1": t1, "t2": t2}, {"o1": w1, "o2": w2})

    single = build()
    single.add_layer("scale1", layers.Scale(factor=w1), ["o1"], ["s1"])
    single.add_layer("scale2", layers.Scale(factor=w2), ["o2"], ["s2"])
    single.add_layer("objective", layers.Sum(), ["s1", "s2"], ["objective"])
    executor.evaluate(executor.State(single), {"x": x, "t1": t1, "t2": t2}, {"objective": 1})

    assert np.allclose(multi.var("x").der, single.var("x").der)
    assert np.allclose(multi.param("fc_w").der, single.param("fc_w").der)
    assert np.allclose(multi.param("fc_b").der, single.param("fc_b").der)


def test_skip_propagation():
    """Variables reachable only through unbound outputs get no derivative."""
    net = graph.Network(conserve_memory=False)
    net.add_layer("L1", layers.Scale(factor=2.0), ["x"], ["y"])
    net.add_layer("L2", layers.Square(), ["y"], ["z"])
    net.add_layer("metric", layers.Sum(), ["x", "u"], ["m"])
    net.add_layer("fork", Fork(), ["v"], ["v1", "v2"])

    x = np.array([1.0, 2.0, 3.0])
    inputs = {"x": x, "u": np.zeros(3), "v": np.ones(3)}
    executor.evaluate(executor.State(net), inputs, {"z": 1, "v1": 1})

    assert np.allclose(net.var("x").der, 8 * x)
    assert net.var("u").der is None
    assert net.var("m").der is None
    # a layer is skipped unless all of its outputs have a derivative
    assert net.var("v").der is None


def test_none_derivative_excludes_output():
    """Binding an output derivative to None is the same as omitting it."""
    net = _scenario()
    net.var("y").precious = True
    x = np.array([1.0, 2.0, 3.0])
    executor.evaluate(executor.State(net), [("x", x)], [("z", 1.0), ("w", None)])
    assert np.allclose(net.var("y").der, 4 * x)
    assert np.allclose(net.var("x").der, 8 * x)
    assert net.var("w").der is None

    # With no derivative left only the forward pass runs
    net.var("y").precious = False
    state = executor.State(net)
    executor.evaluate(state, [("x", x)], {"z": None, "w": None})
    assert state.computing_derivative is False
    assert net.var("y").value is None
    assert np.array_equal(net.var("z").value, np.square(2 * x))


def test_scalar_weight_with_single_consumer():
    """Scalar output derivatives yield derivatives shaped like the values."""
    x = np.array([1.0, 2.0, 3.0])

    net = graph.Network()
    net.add_layer("scale", layers.Scale(factor=2.0), ["x"], ["y"])
    executor.evaluate(executor.State(net), [("x", x)], [("y", 1.0)])
    assert net.var("x").der.shape == (3,)
    assert np.array_equal(net.var("x").der, np.full(3, 2.0))

    net = graph.Network()
    net.add_layer("sum", layers.Sum(), ["x", "u"], ["y"])
    executor.evaluate(executor.State(net), [("x", x), ("u", np.zeros(3))], [("y", 0.5)])
    assert np.array_equal(net.var("x").der, np.full(3, 0.5))
    assert np.array_equal(net.var("u").der, np.full(3, 0.5))

    net = graph.Network()
    net.add_layer("drop", layers.Dropout(rate=0.5, seed=0), ["x"], ["y"])
    net.set_mode("test")
    executor.evaluate(executor.State(net), [("x", x)], [("y", 3.0)])
    assert np.array_equal(net.var("x").der, np.full(3, 3.0))


def test_backward_layer_reports_skips():
    """backward_layer returns whether the layer ran."""
    net = _scenario()
    state = executor.State(net, computing_derivative=True)
    net.var("x").value = np.array([1.0])
    for node in net.layers:
        executor.forward_layer(state, node)

    assert executor.backward_layer(state, net.layers[2]) is False
    net.var("w").der = np.array([1.0])
    assert executor.backward_layer(state, net.layers[2]) is True
    assert np.array_equal(net.var("y").der, np.array([3.0]))


def test_param_ders_accumulate():
    """Parameter derivatives accumulate across passes only when requested."""
    x = np.array([[1.0, 2.0]])

    def run(accumulate: bool) -> np.ndarray:
        net = graph.Network(param_ders_accumulate=accumulate)
        net.add_layer("fc", layers.Affine(in_size=2, out_size=1, seed=0), ["x"], ["y"], ["w", "b"])
        net.init_params()
        state = executor.State(net)
        executor.evaluate(state, [("x", x)], [("y", 1)])
        executor.evaluate(state, [("x", x)], [("y", 1)])
        return net.param("w").der

    assert np.allclose(run(False), x.T)
    assert np.allclose(run(True), 2 * x.T)


def test_determinism():
    """Repeated forward passes of stateless layers are bit-identical."""
    net = graph.Network()
    net.add_layer("fc", layers.Affine(in_size=4, out_size=3, seed=2), ["x"], ["h"], ["w", "b"])
    net.add_layer("act", layers.ReLU(), ["h"], ["y"])
    net.init_params()

    state = executor.State(net)
    x = np.linspace(-1.0, 1.0, 8).reshape(2, 4)
    executor.evaluate(state, [("x", x)])
    first = net.var("y").value.copy()
    executor.evaluate(state, [("x", x)])
    assert np.array_equal(first, net.var("y").value)


def test_dropout_state_and_mode():
    """Dropout reuses its mask until reset and passes through in test mode."""
    net = graph.Network()
    net.add_layer("drop", layers.Dropout(rate=0.5, seed=0), ["x"], ["y"])
    state = executor.State(net)
    x = np.ones(100)

    executor.evaluate(state, [("x", x)])
    first = net.var("y").value
    executor.evaluate(state, [("x", x)])
    assert np.array_equal(first, net.var("y").value)
    assert set(np.unique(first)) <= {0.0, 2.0}

    net.reset()
    executor.evaluate(state, [("x", x)])
    assert not np.array_equal(first, net.var("y").value)

    net.set_mode("test")
    net.var("y").precious = True
    executor.evaluate(state, [("x", x)], [("y", np.full(100, 3.0))])
    assert np.array_equal(net.var("y").value, x)
    assert np.array_equal(net.var("x").der, np.full(100, 3.0))


def test_dropout_follows_batch_size():
    """Dropout draws a new mask when the input shape changes."""
    net = graph.Network()
    net.add_layer("drop", layers.Dropout(rate=0.5, seed=0), ["x"], ["y"])
    net.var("y").precious = True
    state = executor.State(net)

    executor.evaluate(state, [("x", np.ones((4, 3)))])
    assert net.var("y").value.shape == (4, 3)

    executor.evaluate(state, [("x", np.ones((2, 3)))], [("y", np.ones((2, 3)))])
    mask = net.layers[0].block.mask
    assert mask.shape == (2, 3)
    assert np.array_equal(net.var("y").value, mask)
    assert np.array_equal(net.var("x").der, mask)


def test_unknown_names_fail_before_mutation():
    """Binding unknown names raises without touching the stores."""
    net = _scenario()
    net.var("x").value = np.array([42.0])
    state = executor.State(net)

    with pytest.raises(graph.UnknownVariable):
        executor.evaluate(state, [("x", [1.0]), ("antani", [2.0])])
    assert np.array_equal(net.var("x").value, np.array([42.0]))

    with pytest.raises(graph.UnknownVariable):
        executor.evaluate(state, [("x", [1.0])], [("antani", 1)])
    assert np.array_equal(net.var("x").value, np.array([42.0]))
    assert net.var("z").value is None


def test_layer_output_mismatch():
    """Layers returning the wrong number of values are rejected."""
    net = graph.Network()
    net.add_layer("broken", Broken(), ["x"], ["y"])
    with pytest.raises(executor.LayerOutputMismatch):
        executor.evaluate(executor.State(net), [("x", [1.0])])

    net = graph.Network()
    net.add_layer("broken", Fork(), ["x"], ["y", "z"])
    net.layers[0].block.backward = lambda inputs, params, der_outputs: ([], [])
    with pytest.raises(executor.LayerOutputMismatch):
        executor.evaluate(executor.State(net), [("x", [1.0])], [("y", 1), ("z", 1)])


def test_operator_errors_propagate():
    """Errors raised by a layer abort the pass."""
    net = graph.Network()
    net.add_layer("scale", layers.Scale(factor=2.0), ["x"], ["y"])
    net.add_layer("fail", Failing(), ["y"], ["z"])
    with pytest.raises(ValueError):
        executor.evaluate(executor.State(net), [("x", [1.0])])


def test_timing():
    """Layers record how long their forward and backward steps took."""
    net = _scenario()
    for node in net.layers:
        node.forward_time = -1.0
        node.backward_time = -1.0
    executor.evaluate(executor.State(net), [("x", [1.0])], [("z", 1), ("w", 1)])
    for node in net.layers:
        assert node.forward_time >= 0.0
        assert node.backward_time >= 0.0


def test_debug_flags(capsys, monkeypatch):
    """Test debug flags for dumping, tracing and breaking."""
    # Mock input function
    mock_input_calls = []

    def mock_input(prompt):
        mock_input_calls.append(prompt)
        return ""

    monkeypatch.setattr("builtins.input", mock_input)

    net = _scenario()

    # Dump the network
    executor.evaluate(executor.State(net, flags=compileflags.DUMP), [("x", [1.0])])
    captured = capsys.readouterr()
    assert "net = graph.Network(" in captured.out
    assert "net.add_layer(name='L2'" in captured.out

    # Trace the evaluation
    executor.evaluate(executor.State(net, flags=compileflags.TRACE), [("x", [1.0])], [("z", 1), ("w", 1)])
    captured = capsys.readouterr()
    assert "# input x:" in captured.out
    assert "# forward: net.add_layer(name='L1'" in captured.out
    assert "# output y:" in captured.out
    assert "# backward: net.add_layer(name='L3'" in captured.out
    assert "# der y:" in captured.out
    assert "shape: (1,)" in captured.out
    assert len(mock_input_calls) == 0

    # Break after each layer
    executor.evaluate(executor.State(net, flags=compileflags.BREAK), [("x", [1.0])], [("z", 1), ("w", 1)])
    assert len(mock_input_calls) == 6
