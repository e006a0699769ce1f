"""NumPy backend of the execution engine.

Modules:
    executor: Forward and backward evaluation of networks.
    layers: Reference layers implemented using NumPy.
"""
