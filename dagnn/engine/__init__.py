"""The execution engine evaluates networks forward and backward.

Modules:
    compileflags: Common definitions of flags influencing the engine.
    device: Devices on which the engine materializes values.
    frontend: Network construction and the layer capability.
    numpybackend: NumPy-specific backend
"""
