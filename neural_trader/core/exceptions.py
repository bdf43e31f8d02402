"""Error taxonomy for the Neural Trader orchestrator."""

from typing import Optional


class NeuralTraderError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(NeuralTraderError):
    """Fatal startup error; the scheduler never reaches RUNNING."""


class VenueUnavailable(NeuralTraderError):
    """Venue could not be reached (network loss, timeout, maintenance).

    Transient: callers log it, fall back to cached data and retry on the
    next cycle.
    """


class OrderRejected(NeuralTraderError):
    """Venue refused an order. Never retried automatically."""

    def __init__(self, message: str, instrument: Optional[str] = None):
        super().__init__(message)
        self.instrument = instrument


class PredictorError(NeuralTraderError):
    """Predictor could not produce a forecast for an instrument."""


class PositionNotFound(NeuralTraderError, KeyError):
    """Ledger has no open position with the requested id."""

    def __init__(self, position_id: str):
        super().__init__(position_id)
        self.position_id = position_id

    def __str__(self) -> str:
        return f"Position '{self.position_id}' not found"
