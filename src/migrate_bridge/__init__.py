"""Migrate Bridge - resumable, incremental record migration engine.

Moves records from a source system to a destination system while keeping a
persistent identity map between source keys and destination keys, so runs can
be interrupted, resumed, repeated, partially rolled back and re-run against
changed data.
"""

__version__ = "0.1.0"
__author__ = "Migrate Bridge Team"
