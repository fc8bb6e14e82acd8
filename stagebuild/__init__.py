"""stagebuild - staged build orchestrator.

This package resolves multi-stage build descriptions into a dependency
graph, runs each stage's steps against a keyed cache store, and assembles
the final stage's filesystem from artifacts copied between stages.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
