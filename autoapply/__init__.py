"""Job matching, auto-apply scheduling and application dispatch."""

__version__ = "0.3.0"
