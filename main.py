"""
Neural Trader - Main Entry Point

Forecast-driven trading orchestrator for crypto and equities.

Usage:
    # Check configuration
    python main.py --check

    # Run in paper mode on crypto (default)
    python main.py --mode paper --domain crypto

    # Run on equities with state carried over from a previous session
    python main.py --domain equities --import-state state.json --export state.json

    # Show system status
    python main.py --status

    # Initialize database
    python main.py --init-db

    # Replay candle history through the strategies
    python main.py --backtest
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from neural_trader import __version__
from neural_trader.backtest import Backtester, load_history
from neural_trader.core.config import NeuralTraderConfig, app_config
from neural_trader.core.events import EventBus
from neural_trader.core.exceptions import ConfigurationError, NeuralTraderError
from neural_trader.core.models import TradingDomain, utc_now
from neural_trader.core.scheduler import ExecutionScheduler, SchedulerState
from neural_trader.data.market_data import MarketDataCache
from neural_trader.data.stream import TickerStream
from neural_trader.exchange import CcxtVenue, MarketVenue, PaperVenue
from neural_trader.notifications import NotificationService
from neural_trader.portfolio import PortfolioLedger
from neural_trader.risk import RiskManager, create_risk_manager
from neural_trader.storage.database import Database, PersistenceSubscriber
from neural_trader.strategies import (
    PredictorStrategy, SignalGenerator, StrategyManager, create_strategy
)
from neural_trader.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)

QUOTE_CURRENCY = {
    TradingDomain.CRYPTO: "USDT",
    TradingDomain.EQUITIES: "USD",
}


def build_venue(config: NeuralTraderConfig) -> MarketVenue:
    """
    Venue for the configured mode and domain.

    Live crypto trades through ccxt with credentials. Paper mode simulates
    fills locally; for crypto it can take prices from the public exchange.
    """
    domain = TradingDomain(config.domain)
    quote = QUOTE_CURRENCY[domain]
    exchange = config.exchange

    if config.is_live_trading:
        if domain != TradingDomain.CRYPTO:
            raise ConfigurationError("Live trading is only supported for crypto")
        if not exchange.has_credentials:
            raise ConfigurationError(
                f"Missing API credentials for {exchange.exchange_id} in live mode"
            )
        return CcxtVenue(
            exchange_id=exchange.exchange_id,
            api_key=exchange.api_key,
            api_secret=exchange.api_secret,
            sandbox=exchange.sandbox,
            timeout_ms=exchange.timeout_ms,
            quote_currency=quote,
        )

    data_venue = None
    if domain == TradingDomain.CRYPTO and config.market_data.paper_exchange_data:
        # Public endpoints only; no keys are sent in paper mode
        data_venue = CcxtVenue(
            exchange_id=exchange.exchange_id,
            sandbox=False,
            timeout_ms=exchange.timeout_ms,
            quote_currency=quote,
        )

    return PaperVenue(
        initial_cash=config.portfolio.initial_balance,
        quote_currency=quote,
        data_venue=data_venue,
    )


def build_strategies(config: NeuralTraderConfig, instruments: List[str]) -> StrategyManager:
    """StrategyManager for the strategy names active in the current domain."""
    manager = StrategyManager()
    for name in config.trading_mode.strategies:
        if name == "neural":
            generator = SignalGenerator(
                threshold=config.signal.prediction_threshold,
                min_price_change=config.signal.min_price_change,
                stop_loss_pct=config.signal.stop_loss_pct,
                take_profit_pct=config.signal.take_profit_pct,
            )
            manager.register(PredictorStrategy(instruments=instruments, generator=generator))
        else:
            manager.register(create_strategy(name, instruments=instruments))
    return manager


class NeuralTrader:
    """
    Main application: wires venue, market data, strategies, risk, ledger,
    scheduler, persistence and notifications around one event bus.
    """

    def __init__(self, config: Optional[NeuralTraderConfig] = None):
        self.config = config or app_config
        self.domain = TradingDomain(self.config.domain)
        self.instruments = self.config.trading_mode.instruments

        # Components
        self.event_bus = EventBus()
        self.venue: Optional[MarketVenue] = None
        self.cache: Optional[MarketDataCache] = None
        self.stream: Optional[TickerStream] = None
        self.ledger: Optional[PortfolioLedger] = None
        self.risk_manager: Optional[RiskManager] = None
        self.strategy_manager: Optional[StrategyManager] = None
        self.scheduler: Optional[ExecutionScheduler] = None
        self.database: Optional[Database] = None
        self.persistence: Optional[PersistenceSubscriber] = None
        self.notifications: Optional[NotificationService] = None

        # State
        self.export_path: Optional[Path] = None
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self, import_path: Optional[Path] = None):
        """
        Build and connect all components.

        Raises:
            ConfigurationError: If the configuration is unusable
        """
        validation = self.config.validate_configuration()
        if not validation["valid"]:
            raise ConfigurationError("; ".join(validation["issues"]))

        logger.info(
            "app.initializing",
            trading_mode=self.config.trading_mode.trading_mode,
            domain=self.domain.value,
            instruments=self.instruments,
        )

        if self.config.database.persistence_enabled:
            self.database = Database(self.config.database.database_url)
            await self.database.initialize()
            self.persistence = PersistenceSubscriber(self.database, self.event_bus)

        self.venue = build_venue(self.config)
        await self.venue.initialize()

        market = self.config.market_data
        self.cache = MarketDataCache(
            self.venue,
            event_bus=self.event_bus,
            history_window=market.history_window,
            timeframe=market.candle_timeframe,
            volatility_window=market.volatility_window,
        )
        if market.stream_url:
            self.stream = TickerStream(
                market.stream_url,
                self.cache,
                instruments=self.instruments,
                reconnect_delay=market.stream_reconnect_delay,
            )

        portfolio = self.config.portfolio
        self.ledger = PortfolioLedger(
            initial_balances=portfolio.initial_balances(self.domain.value),
            event_bus=self.event_bus,
            history_limit=portfolio.trade_history_limit,
            baseline_equity=float(portfolio.baseline_equity),
        )
        if import_path is not None:
            self.ledger.import_state(json.loads(import_path.read_text()))

        self.risk_manager = create_risk_manager(self.config.risk)
        self.strategy_manager = build_strategies(self.config, self.instruments)
        self.notifications = NotificationService(self.config.notification, self.event_bus)

        self.scheduler = ExecutionScheduler(
            venue=self.venue,
            cache=self.cache,
            strategy_manager=self.strategy_manager,
            risk_manager=self.risk_manager,
            ledger=self.ledger,
            instruments=self.instruments,
            event_bus=self.event_bus,
            domain=self.domain,
            config=self.config.scheduler,
            signal_ttl_seconds=self.config.signal.signal_ttl_seconds,
        )

        self._initialized = True
        logger.info(
            "app.initialized",
            venue=self.venue.name,
            strategies=self.strategy_manager.names(),
            persistence=self.database is not None,
            stream=self.stream is not None,
        )

    async def run(self):
        """Run until SIGINT/SIGTERM, then shut down gracefully."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.scheduler.start()
            if self.stream is not None:
                self.stream.start()

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Stop cycles, liquidate, flush writes and release connections."""
        logger.info("app.shutting_down")

        if self.stream is not None:
            await self.stream.stop()

        if self.scheduler is not None and self.scheduler.state == SchedulerState.RUNNING:
            await self.scheduler.stop()

        if self.export_path is not None and self.ledger is not None:
            self.export_path.write_text(json.dumps(self.ledger.export_state(), indent=2))
            logger.info("app.state_exported", path=str(self.export_path))

        if self.notifications is not None:
            await self.notifications.close()

        if self.persistence is not None:
            await self.persistence.drain()
            self.persistence.detach()

        if self.venue is not None:
            await self.venue.close()

        if self.database is not None:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()

    async def get_status(self) -> Dict:
        """Scheduler, portfolio and recent trade summary."""
        if not self._initialized:
            return {"status": "not_initialized"}

        metrics = self.ledger.get_performance_metrics()
        recent_trades = (
            await self.database.get_trades(limit=5)
            if self.database is not None
            else list(reversed(self.ledger.get_trade_history(limit=5)))
        )

        return {
            "timestamp": utc_now().isoformat(),
            "trading_mode": self.config.trading_mode.trading_mode,
            "scheduler": self.scheduler.get_status(),
            "portfolio": {
                "balances": {k: str(v) for k, v in self.ledger.get_balances().items()},
                "total_value": str(self.ledger.get_total_value(self.cache.price_map())),
            },
            "positions": [
                {
                    "instrument": p.instrument,
                    "side": p.side.value,
                    "quantity": str(p.quantity),
                    "entry_price": str(p.entry_price),
                    "unrealized_pnl": str(p.unrealized_pnl),
                }
                for p in self.ledger.get_open_positions()
            ],
            "performance": {
                "total_trades": metrics.total_trades,
                "win_rate": metrics.win_rate,
                "total_pnl": metrics.total_pnl,
                "sharpe_ratio": metrics.sharpe_ratio,
                "max_drawdown": metrics.max_drawdown,
            },
            "recent_trades": [
                {
                    "instrument": t.instrument,
                    "pnl": str(t.realized_pnl),
                    "reason": t.reason.value,
                }
                for t in recent_trades
            ],
        }


def print_banner():
    """Print the startup banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║                  🧠 NEURAL TRADER v{__version__} 🧠                        ║
║                                                                  ║
║        Forecast-driven trading for crypto and equities           ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝
"""
    print(banner)


def check_configuration(config: NeuralTraderConfig) -> Dict:
    """Validate configuration and collect operator warnings."""
    validation = config.validate_configuration()
    warnings = []

    if config.is_live_trading:
        warnings.append("⚠️  Running in LIVE trading mode!")
        if config.exchange.sandbox:
            warnings.append("   ✓ Exchange sandbox enabled")
        else:
            warnings.append("   ⚠️  Orders go to the production exchange!")
    else:
        warnings.append("✓ Paper trading (simulated fills)")

    if not config.notification.telegram_enabled:
        warnings.append("ℹ️  Telegram notifications disabled")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "trading_mode": config.trading_mode.trading_mode,
        "domain": config.domain,
        "instruments": config.trading_mode.instruments,
        "strategies": config.trading_mode.strategies,
    }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("              NEURAL TRADER - SYSTEM STATUS")
    print("=" * 60)

    scheduler = status.get("scheduler", {})
    print(f"\n📊 Scheduler: {scheduler.get('state', 'unknown').upper()}")
    print(f"🕐 Timestamp: {status.get('timestamp', 'N/A')}")
    print(f"🎮 Trading Mode: {status.get('trading_mode', 'N/A').upper()}")
    print(f"🌐 Domain: {scheduler.get('domain', 'N/A')}")

    portfolio = status.get("portfolio", {})
    print("\n💰 Portfolio:")
    print(f"   Total value: {portfolio.get('total_value', 'N/A')}")
    for asset, amount in portfolio.get("balances", {}).items():
        print(f"   {asset}: {amount}")

    positions = status.get("positions", [])
    print(f"\n📈 Positions (Total: {len(positions)}):")
    if positions:
        for pos in positions:
            print(
                f"   - {pos['instrument']} {pos['side']}: {pos['quantity']} "
                f"@ {pos['entry_price']} (uPnL {pos['unrealized_pnl']})"
            )
    else:
        print("   No open positions")

    perf = status.get("performance", {})
    print("\n📐 Performance:")
    print(f"   Trades: {perf.get('total_trades', 0)}")
    print(f"   Win rate: {perf.get('win_rate', 0):.1%}")
    print(f"   Sharpe: {perf.get('sharpe_ratio', 0):.2f}")

    trades = status.get("recent_trades", [])
    if trades:
        print("\n💹 Recent Trades:")
        for trade in trades[:5]:
            print(f"   {trade['instrument']}: PnL {trade['pnl']} ({trade['reason']})")

    print("\n" + "=" * 60)


async def run_backtest(config: NeuralTraderConfig):
    """Replay venue candle history through the configured strategies."""
    domain = TradingDomain(config.domain)
    instruments = config.trading_mode.instruments
    venue = build_venue(config)

    print(f"\n📊 Running backtest for {', '.join(instruments)}...")
    try:
        await venue.initialize()
        market_data = await load_history(
            venue,
            instruments,
            config.market_data.candle_timeframe,
            config.market_data.history_window,
        )
    finally:
        await venue.close()

    backtester = Backtester(
        strategy_manager=build_strategies(config, instruments),
        risk_manager=create_risk_manager(config.risk),
        initial_balance=config.portfolio.initial_balance,
        quote_currency=QUOTE_CURRENCY[domain],
    )
    result = await backtester.run(market_data)

    print("\n" + "=" * 60)
    print("                 BACKTEST RESULTS")
    print("=" * 60)
    for key, value in result.summary().items():
        print(f"   {key}: {value}")
    print("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Neural Trader - forecast-driven trading orchestrator"
    )

    parser.add_argument(
        "--mode",
        choices=["paper", "live"],
        help="Trading mode: paper=simulated fills, live=real exchange orders",
    )
    parser.add_argument(
        "--domain",
        choices=["crypto", "equities"],
        help="Market domain: crypto trades 24/7, equities follow NYSE hours",
    )

    # Actions
    parser.add_argument(
        "--status", action="store_true", help="Show system status and exit"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument("--backtest", action="store_true", help="Run backtest mode")

    # Ledger state
    parser.add_argument(
        "--export", metavar="PATH", type=Path, help="Write ledger state to PATH on shutdown"
    )
    parser.add_argument(
        "--import-state", metavar="PATH", type=Path, help="Load ledger state from PATH at startup"
    )
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = app_config

    # Setup logging
    setup_logging(config.logging)

    if args.mode:
        config.trading_mode.trading_mode = args.mode
    if args.domain:
        config.trading_mode.trading_domain = args.domain

    if not args.check and not args.status:
        print_banner()

    config_check = check_configuration(config)
    for warning in config_check["warnings"]:
        print(warning)

    # Handle --check
    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nTrading Mode: {config_check['trading_mode']}")
        print(f"Domain: {config_check['domain']}")
        print(f"Instruments: {', '.join(config_check['instruments'])}")
        print(f"Strategies: {', '.join(config_check['strategies'])}")
        print("\n" + "=" * 60)
        return 0 if config_check["valid"] else 1

    # Handle --init-db
    if args.init_db:
        print("\n📦 Initializing database...")
        db = Database(config.database.database_url)
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return 0

    try:
        # Handle --backtest
        if args.backtest:
            await run_backtest(config)
            return 0

        app = NeuralTrader(config)
        app.export_path = args.export
        await app.initialize(import_path=args.import_state)

        # Handle --status
        if args.status:
            print_status(await app.get_status())
            await app.shutdown()
            return 0

        await app.run()
        return 0

    except ConfigurationError as e:
        logger.error("main.configuration_error", error=str(e))
        print(f"\n✗ Configuration error: {e}")
        print("\nPlease check your .env file and try again.")
        return 1
    except NeuralTraderError as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
        return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
