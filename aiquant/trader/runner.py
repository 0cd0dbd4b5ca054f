import logging

from aiquant.data.market_data import MarketScanner
from aiquant.trader.scheduler import CycleScheduler
from aiquant.trader.services import build_services
from aiquant.utils.config_loader import load_config
from aiquant.utils.database import close_write_conn, force_commit, init_db, log_event

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    init_db()

    try:
        config = load_config()
        scanner = MarketScanner.from_config(config)
        services = build_services(config, market_data=scanner)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Startup aborted, configuration invalid: {e}")
        log_event("ERROR", f"Configuration invalid: {e}", symbol="Config", step="Startup")
        force_commit()
        return 1

    scheduler = CycleScheduler.from_config(config, services.run_cycle)
    log_event(
        "INFO",
        f"Trader started (every {scheduler.interval_seconds}s, {len(scanner.cfg.symbols)} symbols)",
        symbol="Cycle",
        step="Startup",
    )
    force_commit()

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping trader...")
    finally:
        scheduler.stop(timeout=0)
        services.shutdown()
        close_write_conn()
    return 0
