"""Risk management module for Neural Trader.

- Ordered, short-circuit signal validation
- Fractional Kelly position sizing with volatility haircuts
- Drawdown tracking and adaptive risk limits
"""

from neural_trader.risk.risk_manager import (
    CorrelationPolicy,
    RiskCheck,
    RiskManager,
    RiskRule,
    RiskState,
    StaticCorrelationPolicy,
    create_risk_manager,
    volatility_multiplier,
)

__all__ = [
    'RiskManager',
    'RiskCheck',
    'RiskRule',
    'RiskState',
    'CorrelationPolicy',
    'StaticCorrelationPolicy',
    'create_risk_manager',
    'volatility_multiplier',
]
