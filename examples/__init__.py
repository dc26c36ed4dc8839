"""
minigpu examples.

This module contains example programs demonstrating the minigpu
compute-shader API.
"""

from examples.add_scalar import run_add_scalar_example, run_async_example

__all__ = [
    "run_add_scalar_example",
    "run_async_example",
]
