"""The engine frontend allows describing networks of layers.

Modules:
    graph: Network construction and the variable and parameter stores.
    layer: The capability every layer implements.
"""
