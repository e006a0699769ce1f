"""Runnable snippets from README.md."""

import numpy as np

from dagnn.engine.frontend import graph
from dagnn.engine.numpybackend import executor, layers

# ---------------------------------------------------------------------------
# README: evaluation snippet
# ---------------------------------------------------------------------------

net = graph.Network()
net.add_layer("fc", layers.Affine(in_size=3, out_size=2, seed=0), ["x"], ["h"], ["w", "b"])
net.add_layer("loss", layers.SquaredError(), ["h", "t"], ["objective"])
net.init_params()

x = np.array([[1.0, 2.0, 3.0]])
t = np.array([[0.0, 1.0]])

state = executor.State(net)
executor.evaluate(state, [("x", x), ("t", t)], [("objective", 1.0)])

# d(objective)/dW = x^T (h - t)
h = x @ net.param("w").value + net.param("b").value
np.testing.assert_allclose(net.param("w").der, x.T @ (h - t))
np.testing.assert_allclose(net.param("b").der, (h - t).sum(axis=0))


# ---------------------------------------------------------------------------
# Shared variable: x -> L1 -> y, y -> L2 -> z, y -> L3 -> w
# ---------------------------------------------------------------------------

net2 = graph.Network()
net2.add_layer("L1", layers.Scale(factor=2.0), ["x"], ["y"])
net2.add_layer("L2", layers.Square(), ["y"], ["z"])
net2.add_layer("L3", layers.Scale(factor=3.0), ["y"], ["w"])
for name in ("y", "z", "w"):
    net2.var(name).precious = True

executor.evaluate(executor.State(net2), [("x", [1.0, 2.0, 3.0])], [("z", 1), ("w", 1)])

# der(y) = 2y (from L2) + 3 (from L3) with y = [2, 4, 6]
np.testing.assert_allclose(net2.var("y").der, [7.0, 11.0, 15.0])
