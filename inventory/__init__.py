"""
Inventory core: reference normalization, book persistence, event publishing
and the mutation orchestrator that ties them together.
"""

__version__ = "1.0.0"
