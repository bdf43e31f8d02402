"""Risk gate: signal validation, position sizing and adaptive limits.

Every signal passes through an ordered rule registry before it can reach
the execution queue. Sizing combines a fixed risk budget per trade with a
fractional Kelly multiplier and a volatility haircut.

Any change to the rule order or sizing math changes what the bot trades.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from neural_trader.core.config import RiskConfig
from neural_trader.core.models import (
    PerformanceMetrics, Position, RiskMetrics, Signal, SignalAction,
    split_instrument, utc_now
)

logger = structlog.get_logger(__name__)

# (threshold, multiplier) pairs, checked highest first
VOLATILITY_TIERS = (
    (0.3, Decimal("0.5")),
    (0.2, Decimal("0.7")),
    (0.1, Decimal("0.9")),
)

# Adaptive limits
RISK_PER_TRADE_CEILING = 0.03
MAX_OPEN_POSITIONS_FLOOR = 3
MAX_OPEN_POSITIONS_CEILING = 15

REJECTION_LOG_LIMIT = 1000


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    Attributes:
        passed: Whether the signal passed all risk checks
        reason: Human-readable explanation if check failed
        risk_level: Severity level of the risk assessment
        rule_triggered: Name of the risk rule that triggered (if any)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    risk_level: str = "normal"
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
    """
    name: str
    check_fn: Callable[[Signal, List[Position]], RiskCheck]
    priority: int = 100


@dataclass
class RiskState:
    """Mutable risk state owned by the RiskManager."""
    peak_balance: Decimal = Decimal("0")
    current_drawdown: float = 0.0
    risk_per_trade: float = 0.02
    max_open_positions: int = 10
    max_position_size: Decimal = Decimal("10000")
    max_drawdown: float = 0.20
    correlation_cache: Dict[Tuple[str, str], float] = field(default_factory=dict)


class CorrelationPolicy(ABC):
    """Estimates the correlation between two instruments."""

    @abstractmethod
    def correlation(self, first: str, second: str) -> float:
        """Correlation coefficient in [0, 1]."""


class StaticCorrelationPolicy(CorrelationPolicy):
    """
    Fixed-coefficient correlation heuristic.

    Instruments sharing a base asset are fully correlated, curated pairs get
    a medium coefficient, everything else a low default.
    """

    SAME_ASSET = 1.0
    DEFAULT = 0.3
    CURATED_PAIRS = {
        frozenset(("BTC", "ETH")): 0.7,
        frozenset(("SOL", "AVAX")): 0.7,
        frozenset(("MATIC", "BNB")): 0.7,
    }

    def __init__(self, pairs: Optional[Dict[frozenset, float]] = None, default: float = DEFAULT):
        self.pairs = dict(self.CURATED_PAIRS if pairs is None else pairs)
        self.default = default

    def correlation(self, first: str, second: str) -> float:
        base_a = split_instrument(first)[0]
        base_b = split_instrument(second)[0]
        if base_a == base_b:
            return self.SAME_ASSET
        return self.pairs.get(frozenset((base_a, base_b)), self.default)


class RiskManager:
    """
    Central risk gate.

    Rules are evaluated in priority order and the first failure rejects
    the signal:
    1. drawdown above the limit
    2. open position count at the limit
    3. correlation with an open position above the limit
    4. confidence below the minimum
    5. volatility above the maximum
    6. Kelly fraction below the minimum
    7. BUY while a position in the same instrument is open
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        correlation_policy: Optional[CorrelationPolicy] = None,
    ):
        self.config = config or RiskConfig()
        self.correlation_policy = correlation_policy or StaticCorrelationPolicy()

        self.state = RiskState(
            risk_per_trade=self.config.risk_per_trade,
            max_open_positions=self.config.max_open_positions,
            max_position_size=Decimal(str(self.config.max_position_size)),
            max_drawdown=self.config.max_drawdown,
        )

        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()

        self.rejected_signals: List[Dict] = []

    def _register_default_rules(self):
        """Register the default set of risk rules in priority order."""
        self._risk_rules = [
            RiskRule(name="max_drawdown", check_fn=self._check_drawdown, priority=1),
            RiskRule(name="max_open_positions", check_fn=self._check_open_positions, priority=2),
            RiskRule(name="correlation", check_fn=self._check_correlation, priority=3),
            RiskRule(name="signal_confidence", check_fn=self._check_confidence, priority=4),
            RiskRule(name="volatility", check_fn=self._check_volatility, priority=5),
            RiskRule(name="kelly_fraction", check_fn=self._check_kelly, priority=6),
            RiskRule(name="duplicate_position", check_fn=self._check_duplicate_position, priority=7),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    def add_rule(self, rule: RiskRule) -> None:
        """Register an extra rule and keep the registry ordered."""
        self._risk_rules.append(rule)
        self._risk_rules.sort(key=lambda r: r.priority)

    @property
    def rule_names(self) -> List[str]:
        return [r.name for r in self._risk_rules]

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_signal(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        """
        Validate a signal against all risk rules.

        Args:
            signal: The signal to validate
            open_positions: Positions currently open in the ledger

        Returns:
            RiskCheck indicating if the signal may be queued
        """
        for rule in self._risk_rules:
            try:
                result = rule.check_fn(signal, open_positions)
            except Exception as e:
                logger.error(
                    "risk_manager.rule_error",
                    rule=rule.name,
                    error=str(e),
                    instrument=signal.instrument,
                )
                reason = f"Risk rule '{rule.name}' encountered an error"
                self._log_signal_rejected(signal, rule.name, reason)
                return RiskCheck(
                    passed=False,
                    reason=reason,
                    risk_level="critical",
                    rule_triggered=rule.name,
                )

            if not result.passed:
                self._log_signal_rejected(signal, rule.name, result.reason)
                logger.warning(
                    "risk_manager.signal_rejected",
                    instrument=signal.instrument,
                    action=signal.action.value,
                    rule=rule.name,
                    reason=result.reason,
                )
                result.rule_triggered = rule.name
                return result

        logger.info(
            "risk_manager.signal_approved",
            instrument=signal.instrument,
            action=signal.action.value,
            strategy=signal.strategy,
            confidence=signal.confidence,
        )
        return RiskCheck(passed=True)

    def validate(self, signal: Signal, open_positions: List[Position]) -> bool:
        """Boolean form of ``validate_signal``."""
        return self.validate_signal(signal, open_positions).passed

    # === Risk Rule Implementations ===

    def _check_drawdown(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        if self.state.current_drawdown > self.state.max_drawdown:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Drawdown {self.state.current_drawdown:.2%} exceeds "
                    f"limit {self.state.max_drawdown:.2%}"
                ),
                risk_level="critical",
                metadata={'drawdown': self.state.current_drawdown},
            )
        return RiskCheck(passed=True)

    def _check_open_positions(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        count = len(open_positions)
        if count >= self.state.max_open_positions:
            return RiskCheck(
                passed=False,
                reason=f"Max open positions reached: {count}/{self.state.max_open_positions}",
                risk_level="warning",
                metadata={'current': count, 'max': self.state.max_open_positions},
            )
        return RiskCheck(passed=True)

    def _check_correlation(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        if not open_positions:
            return RiskCheck(passed=True)

        worst = max(
            (self.get_correlation(signal.instrument, p.instrument), p.instrument)
            for p in open_positions
        )
        if worst[0] > self.config.max_correlation:
            return RiskCheck(
                passed=False,
                reason=f"Correlation {worst[0]:.2f} with {worst[1]} exceeds {self.config.max_correlation}",
                risk_level="warning",
                metadata={'correlation': worst[0], 'with': worst[1]},
            )
        return RiskCheck(passed=True)

    def _check_confidence(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        if signal.confidence < self.config.min_confidence:
            return RiskCheck(
                passed=False,
                reason=f"Signal confidence {signal.confidence:.2f} below minimum {self.config.min_confidence}",
                metadata={'confidence': signal.confidence},
            )
        return RiskCheck(passed=True)

    def _check_volatility(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        volatility = signal.volatility
        if volatility > self.config.max_volatility:
            return RiskCheck(
                passed=False,
                reason=f"Volatility {volatility:.2f} above maximum {self.config.max_volatility}",
                risk_level="warning",
                metadata={'volatility': volatility},
            )
        return RiskCheck(passed=True)

    def _check_kelly(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        kelly = self.kelly_fraction(signal)
        if kelly < self.config.min_kelly_fraction:
            return RiskCheck(
                passed=False,
                reason=f"Kelly fraction {kelly:.4f} below minimum {self.config.min_kelly_fraction}",
                metadata={'kelly': kelly},
            )
        return RiskCheck(passed=True)

    def _check_duplicate_position(self, signal: Signal, open_positions: List[Position]) -> RiskCheck:
        """No pyramiding: one long entry per instrument."""
        if signal.action != SignalAction.BUY:
            return RiskCheck(passed=True)

        for position in open_positions:
            if position.instrument == signal.instrument:
                return RiskCheck(
                    passed=False,
                    reason=f"Already have an open position in {signal.instrument}",
                    metadata={'position_id': position.id, 'existing_side': position.side.value},
                )
        return RiskCheck(passed=True)

    def get_correlation(self, first: str, second: str) -> float:
        """Policy correlation, memoized per unordered pair."""
        key = tuple(sorted((first, second)))
        cached = self.state.correlation_cache.get(key)
        if cached is None:
            cached = self.correlation_policy.correlation(first, second)
            self.state.correlation_cache[key] = cached
        return cached

    # =========================================================================
    # Sizing
    # =========================================================================

    def kelly_fraction(self, signal: Signal) -> float:
        """
        Fractional Kelly for the signal's reward/risk profile.

        b = |target - price| / |price - stop|, f = (p*b - q) / b, then scaled
        by the safety multiplier and bounded to [0, kelly_cap].
        """
        stop_distance = abs(signal.price - signal.stop_loss)
        if stop_distance == 0:
            return 0.0
        b = float(abs(signal.target_price - signal.price) / stop_distance)
        if b == 0:
            return 0.0

        p = signal.confidence
        q = 1 - p
        raw = (p * b - q) / b
        scaled = raw * self.config.kelly_multiplier
        return min(max(scaled, 0.0), self.config.kelly_cap)

    def size_position(self, signal: Signal, account_balance: Decimal) -> Decimal:
        """
        Position quantity for a validated signal.

        Returns Decimal("0") when the resulting notional is below the
        minimum trade value.
        """
        stop_distance = abs(signal.price - signal.stop_loss)
        if stop_distance == 0 or account_balance <= 0:
            return Decimal("0")

        risk_amount = Decimal(str(account_balance)) * Decimal(str(self.state.risk_per_trade))
        size = risk_amount / stop_distance

        kelly = min(self.kelly_fraction(signal), self.config.kelly_cap)
        size *= Decimal(str(round(kelly, 10)))
        size *= volatility_multiplier(signal.volatility)

        max_size = self.state.max_position_size / signal.price
        if size > max_size:
            size = max_size

        if size * signal.price < Decimal(str(self.config.min_trade_value)):
            return Decimal("0")

        return size.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    # =========================================================================
    # Balance tracking & adaptive limits
    # =========================================================================

    def update_balance(self, balance: Decimal) -> float:
        """Track the peak balance and current drawdown; returns the drawdown."""
        balance = Decimal(str(balance))
        if balance > self.state.peak_balance:
            self.state.peak_balance = balance

        if self.state.peak_balance > 0:
            drawdown = float((self.state.peak_balance - balance) / self.state.peak_balance)
        else:
            drawdown = 0.0
        self.state.current_drawdown = max(drawdown, 0.0)

        if self.state.current_drawdown > self.state.max_drawdown * 0.8:
            logger.warning(
                "risk_manager.drawdown_warning",
                drawdown=round(self.state.current_drawdown, 4),
                limit=self.state.max_drawdown,
                peak=str(self.state.peak_balance),
                balance=str(balance),
            )
        return self.state.current_drawdown

    def adjust_risk_parameters(self, metrics: PerformanceMetrics) -> bool:
        """
        Tighten limits in drawdown, loosen them on strong performance.

        Returns:
            True if any limit changed
        """
        before = (self.state.risk_per_trade, self.state.max_open_positions)

        if self.state.current_drawdown > self.state.max_drawdown * 0.5:
            self.state.risk_per_trade *= 0.5
            self.state.max_open_positions = max(
                MAX_OPEN_POSITIONS_FLOOR, int(self.state.max_open_positions * 0.5)
            )
            reason = "drawdown"
        elif metrics.win_rate > 0.6 and metrics.profit_factor > 2:
            self.state.risk_per_trade = min(RISK_PER_TRADE_CEILING, self.state.risk_per_trade * 1.1)
            self.state.max_open_positions = min(
                MAX_OPEN_POSITIONS_CEILING, self.state.max_open_positions + 1
            )
            reason = "performance"
        else:
            return False

        changed = before != (self.state.risk_per_trade, self.state.max_open_positions)
        if changed:
            logger.info(
                "risk_manager.parameters_adjusted",
                reason=reason,
                risk_per_trade=round(self.state.risk_per_trade, 6),
                max_open_positions=self.state.max_open_positions,
            )
        return changed

    def get_risk_metrics(
        self,
        open_positions: List[Position],
        balance: Decimal,
        performance: Optional[PerformanceMetrics] = None,
    ) -> RiskMetrics:
        """Point-in-time exposure and drawdown report."""
        exposure = sum(
            ((p.current_price or p.entry_price) * p.quantity for p in open_positions),
            Decimal("0"),
        )
        balance = Decimal(str(balance))
        ratio = float(exposure / balance) if balance > 0 else 0.0

        return RiskMetrics(
            current_drawdown=self.state.current_drawdown,
            peak_balance=float(self.state.peak_balance),
            exposure=float(exposure),
            exposure_ratio=ratio,
            open_positions=len(open_positions),
            risk_per_trade=self.state.risk_per_trade,
            max_open_positions=self.state.max_open_positions,
            value_at_risk=performance.value_at_risk if performance else 0.0,
            sharpe_ratio=performance.sharpe_ratio if performance else 0.0,
        )

    def _log_signal_rejected(self, signal: Signal, rule: str, reason: str):
        """Log a rejected signal for analysis."""
        rejection = {
            'timestamp': utc_now().isoformat(),
            'signal_id': signal.id,
            'instrument': signal.instrument,
            'action': signal.action.value,
            'strategy': signal.strategy,
            'confidence': signal.confidence,
            'rule_triggered': rule,
            'reason': reason,
        }
        self.rejected_signals.append(rejection)

        if len(self.rejected_signals) > REJECTION_LOG_LIMIT:
            self.rejected_signals = self.rejected_signals[-REJECTION_LOG_LIMIT:]


def volatility_multiplier(volatility: float) -> Decimal:
    """Size haircut for the volatility tier."""
    for threshold, multiplier in VOLATILITY_TIERS:
        if volatility > threshold:
            return multiplier
    return Decimal("1.0")


# === Convenience Functions ===

def create_risk_manager(config: Optional[RiskConfig] = None) -> RiskManager:
    """Factory function to create a configured RiskManager instance."""
    return RiskManager(config=config)
