"""The dagnn package evaluates directed acyclic graphs of neural network layers."""

from .engine.frontend.graph import (
    DuplicateLayer,
    DuplicateProducer,
    LayerNode,
    Network,
    Param,
    UnknownLayer,
    UnknownParameter,
    UnknownVariable,
    Variable,
)
from .engine.frontend.layer import Layer, LayerOutputMismatch, UnknownConfigField, UnknownLayerKind
from .engine.numpybackend import layers
from .engine.numpybackend.executor import State, evaluate

__all__ = [
    "DuplicateLayer",
    "DuplicateProducer",
    "Layer",
    "LayerNode",
    "LayerOutputMismatch",
    "Network",
    "Param",
    "State",
    "UnknownConfigField",
    "UnknownLayer",
    "UnknownLayerKind",
    "UnknownParameter",
    "UnknownVariable",
    "Variable",
    "evaluate",
    "layers",
]
