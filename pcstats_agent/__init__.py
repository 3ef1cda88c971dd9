"""
PC Stats Agent

Samples system, per-process and CPU temperature metrics on a fixed interval
and writes them to a snapshot store, queueing locally while the store is
unreachable.
"""

__version__ = "0.1.0"
