"""
PrintCraft generation job pipeline.

Accepts generation requests, tracks them durably, runs them against an
external generation provider through a bounded worker pool, and streams
progress to subscribers.
"""

__version__ = "1.0.0"
