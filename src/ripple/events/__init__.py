"""Event contract — the envelope carried on the bus and its taxonomy.

Learn: Producers (API handlers) and the consumer (fan-out worker) only
share this package. Anything that goes on the wire is defined here.
"""
