"""
Entry point: one paper-trading session with metrics server and alerting.

    python -m volumebot.main
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys

from volumebot.config.config import Settings
from volumebot.execution.paper import PaperBook
from volumebot.execution.wallets import LocalWalletProvider, generate_wallets
from volumebot.infra.logging_cfg import build_logger
from volumebot.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from volumebot.monitoring.metrics_rich import RichMetrics
from volumebot.monitoring.server import HealthChecker, start_metrics_server
from volumebot.orchestrator.engine import TradingEngine
from volumebot.session.models import Session
from volumebot.session.snapshot import AtomicSnapshotStore


def fund_paper_wallets(book: PaperBook, session: Session, native: float) -> None:
    """Fund the trading wallets and the admin wallet, which pays fee collections."""
    for wallet in (session.admin_wallet, *session.trading_wallets):
        book.fund(wallet.address, native=native)


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("volumebot", level=cfg.log_level, file_path=cfg.log_file)
    log.info(json.dumps({"event": "settings", **cfg.dump()}))
    engine_cfg = cfg.engine_config()

    alerts = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.WARNING,
        enabled=cfg.alert_enabled,
    ))
    health = HealthChecker()
    health.set_component_health("config", True, "Configuration validated")
    rich = RichMetrics()

    book = PaperBook(price_native=engine_cfg.token_price_native, failure_rate=cfg.paper_failure_rate)
    provider = LocalWalletProvider()
    engine = TradingEngine(
        swap_executor=book,
        balance_oracle=book,
        transport=book,
        wallet_provider=provider,
        config=engine_cfg,
        snapshot_store=AtomicSnapshotStore(cfg.state_dir),
        rich_metrics=rich,
        alerts=alerts,
    )

    if cfg.session_file:
        session_id = await engine.import_session(cfg.session_file, owner=cfg.owner, strategy=cfg.strategy)
    else:
        admin, wallets = generate_wallets(provider, cfg.wallet_count)
        session_id = engine.create_session(cfg.owner, cfg.token, cfg.strategy, admin, wallets,
                                           routing_data={"venue": "paper"}, token_symbol=cfg.token)
        await engine.export_session(session_id)

    fund_paper_wallets(book, engine.state.get(session_id), cfg.paper_native_balance)

    srv = None
    if cfg.metrics_port:
        srv = await start_metrics_server(engine, cfg.metrics_port, rich_metrics=rich,
                                         auth_token=cfg.metrics_token, health_checker=health)

    log.info(json.dumps({"event": "startup", "session": session_id, "strategy": cfg.strategy}))
    await alerts.alert_startup([session_id], strategy=cfg.strategy, wallets=cfg.wallet_count)

    await engine.start_session(session_id)
    health.set_ready(True)
    run_task = asyncio.create_task(engine.wait_for_session(session_id))

    loop = asyncio.get_running_loop()

    def stop_all() -> None:
        if not run_task.done():
            run_task.cancel()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    reason = "normal"
    try:
        status = await run_task
        log.info(json.dumps({"event": "session_finished", "session": session_id, "status": status.value}))
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
        reason = "signal_received"
    finally:
        health.set_ready(False)
        await engine.shutdown(reason)
        log.info(json.dumps({"event": "summary",
                             "metrics": engine.get_metrics_snapshot(session_id).to_dict(),
                             "fees": engine.get_fee_report()}))
        await alerts.alert_shutdown(reason)
        await alerts.close()
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        log.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)
