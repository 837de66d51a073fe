"""Research Brain — autonomous research orchestrator."""

__version__ = "1.0.0"
