"""
Reconciliation package: replays events that could not be delivered when their
book mutation committed.

This package contains:
- The reconciliation forwarder
- The scheduled forwarder service
"""

__version__ = "1.0.0"
