"""Domain layer — vocabulary, grammar, lifecycle, and error types.

This layer depends only on stdlib and networkx (graph search).
It must never import from services, infrastructure, plugins, or config.
"""
