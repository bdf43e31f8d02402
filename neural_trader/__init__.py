"""Neural Trader: signal-to-execution trading orchestrator."""

__version__ = "2.5.0"
