"""Forecasting models."""

from neural_trader.ml.predictor import IndicatorPredictor, Predictor

__all__ = ["Predictor", "IndicatorPredictor"]
