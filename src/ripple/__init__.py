"""Ripple — asynchronous notification fan-out and real-time delivery.

Domain events (follow, post, like) are published to a partitioned bus,
expanded into per-recipient notifications by the fan-out worker, persisted,
and relayed to connected clients through the delivery bridge.
"""

__version__ = "0.1.0"
