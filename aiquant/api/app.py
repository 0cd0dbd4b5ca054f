from __future__ import annotations

import asyncio
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aiquant.data.market_data import MarketScanner
from aiquant.domain.models import MarketObservation
from aiquant.trader.backtest import run_backtest
from aiquant.trader.scheduler import CycleScheduler
from aiquant.trader.services import MarketDataUnavailable, TradingServices, build_services
from aiquant.utils.config_loader import load_config
from aiquant.utils.database import (
    _connect_ro,
    force_commit,
    get_events,
    get_performance_history,
    get_performance_summary,
    get_scheduler_state,
    get_trades,
    init_db,
)
from aiquant.utils import database

logger = logging.getLogger(__name__)

# Thread pool for blocking DB reads so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="db_ro")
# Cycles, backtests and retrains are long-running; keep them off the read pool.
_work_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="api_work")

_SECRET_KEYS = {"api_key"}


def _df_to_records(df: pd.DataFrame | None) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    # NULL columns come back as NaN, which is not valid JSON.
    clean = df.astype(object).where(pd.notna(df), None)
    return jsonable_encoder(clean.to_dict(orient="records"))


def _redact(cfg: Any) -> Any:
    if isinstance(cfg, dict):
        return {k: ("***" if k in _SECRET_KEYS and v else _redact(v)) for k, v in cfg.items()}
    if isinstance(cfg, list):
        return [_redact(v) for v in cfg]
    return cfg


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking read in the thread pool with a timeout.
    Returns None on timeout or failure so read endpoints degrade instead of erroring.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Database call timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"Database call failed: {func.__name__}: {e}")
        return None


async def _run_work(func, *args, **kwargs):
    """Run a blocking operation off the event loop; errors propagate to the caller."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_work_executor, lambda: func(*args, **kwargs))


def _parse_observations(payload: Any) -> tuple[list[MarketObservation], float | None]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    rows = payload.get("observations")
    if not isinstance(rows, list):
        raise HTTPException(status_code=400, detail="'observations' must be a list")
    try:
        observations = [MarketObservation.from_dict(r) for r in rows]
        ctx = payload.get("market_context", payload.get("marketContext"))
        context = float(ctx) if ctx is not None else None
    except (TypeError, ValueError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid observation: {e}") from e
    return observations, context


def _parse_symbol_price(payload: Any, *, price_required: bool) -> tuple[str, float | None]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    symbol = str(payload.get("symbol") or "").strip().upper()
    if not symbol:
        raise HTTPException(status_code=400, detail="'symbol' is required")
    raw_price = payload.get("price")
    if raw_price is None:
        if price_required:
            raise HTTPException(status_code=400, detail="'price' is required")
        return symbol, None
    try:
        price = float(raw_price)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail="'price' must be a number") from e
    if price <= 0:
        raise HTTPException(status_code=400, detail="'price' must be positive")
    return symbol, price


def create_app(services: TradingServices | None = None, *, run_scheduler: bool = False) -> FastAPI:
    """
    Build the API around one `TradingServices` instance.

    Without `services`, they are built from `config/config.yaml` at startup. With
    `run_scheduler`, the API process also drives the periodic cycle.
    """
    app = FastAPI(title="AI Quant API", version="0.1.0")
    app.state.services = services
    app.state.scheduler = None

    @app.on_event("startup")
    async def startup_event():
        init_db()
        if app.state.services is None:
            cfg = load_config()
            scanner = None
            try:
                scanner = MarketScanner.from_config(cfg)
            except ValueError as e:
                logger.warning(f"Market data disabled: {e}")
            app.state.services = build_services(cfg, market_data=scanner)
        if run_scheduler:
            svc: TradingServices = app.state.services
            sched = CycleScheduler.from_config(svc.config, svc.run_cycle)
            sched.start_background()
            app.state.scheduler = sched
            logger.info(f"Scheduler started (every {sched.interval_seconds}s)")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
            app.state.scheduler = None
        if app.state.services is not None:
            app.state.services.shutdown()
        force_commit()

    # Local dev defaults.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Return a clean JSON 500 instead of crashing the request."""
        logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
        logger.debug(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={
                "detail": f"Internal server error: {type(exc).__name__}",
                "message": str(exc)[:200],
            },
        )

    def _require_services() -> TradingServices:
        svc = app.state.services
        if svc is None:
            raise HTTPException(status_code=503, detail="Trading services not ready")
        return svc

    async def _scan(svc: TradingServices):
        try:
            return await _run_work(svc.fetch_batch)
        except MarketDataUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        db_ok = False
        db_error = None
        try:
            conn = _connect_ro()
            try:
                conn.execute("SELECT 1").fetchone()
            finally:
                conn.close()
            db_ok = True
        except Exception as e:
            db_error = str(e)

        svc = app.state.services
        return {
            "status": "ok" if db_ok and svc is not None else "degraded",
            "db_path": database.DB_PATH,
            "db_ok": db_ok,
            "db_error": db_error,
            "services_ready": svc is not None,
            "market_data": svc is not None and svc.market_data is not None,
        }

    @app.get("/api/status")
    async def status() -> dict[str, Any]:
        svc = _require_services()
        snap = svc.ledger.status()
        sched = await _run_in_executor(get_scheduler_state)
        return jsonable_encoder(
            {
                "cash": snap.cash,
                "equity": snap.equity,
                "starting_cash": svc.ledger.starting_cash,
                "positions": {p.symbol: p.to_dict() for p in snap.positions},
                "trade_count": len(snap.trades),
                "predictor": {
                    "trained_on": svc.predictor.trained_on,
                    "is_trained": svc.predictor.is_trained,
                },
                "scheduler": sched or {"last_run_utc": None},
            }
        )

    @app.get("/api/trades")
    async def trades(limit: int = Query(default=100, ge=1, le=5000)) -> list[dict[str, Any]]:
        """Trades made by this process, newest first."""
        svc = _require_services()
        recent = list(svc.ledger.status().trades)[-limit:]
        return [t.to_dict() for t in reversed(recent)]

    @app.get("/api/history/trades")
    async def history_trades(limit: int = Query(default=200, ge=1, le=5000)) -> list[dict[str, Any]]:
        df = await _run_in_executor(get_trades, limit=limit)
        return _df_to_records(df)

    @app.get("/api/events")
    async def events(limit: int = Query(default=200, ge=1, le=2000)) -> list[dict[str, Any]]:
        df = await _run_in_executor(get_events, limit=limit)
        return _df_to_records(df)

    @app.get("/api/performance")
    async def performance() -> list[dict[str, Any]]:
        df = await _run_in_executor(get_performance_history)
        return _df_to_records(df)

    @app.get("/api/performance/summary")
    async def performance_summary() -> dict[str, Any]:
        summary = await _run_in_executor(get_performance_summary)
        return jsonable_encoder(summary or {})

    @app.get("/api/config/effective")
    async def config_effective() -> dict[str, Any]:
        svc = _require_services()
        return jsonable_encoder(
            {
                "config": _redact(svc.config),
                "policy": svc.policy.config.to_dict(),
                "normalisation": svc.normaliser.to_dict(),
                "trail_stop_fraction": svc.risk_monitor.trail_stop_fraction,
            }
        )

    @app.get("/api/scan")
    async def scan() -> dict[str, Any]:
        svc = _require_services()
        batch = await _scan(svc)
        return {
            "market_context": batch.market_context,
            "observations": [o.to_dict() for o in batch.observations],
        }

    @app.get("/api/decide")
    async def decide() -> dict[str, Any]:
        """Scan and show what the policy would do, without trading."""
        svc = _require_services()
        batch = await _scan(svc)
        decisions = svc.decide(list(batch.observations), batch.market_context)
        return {"market_context": batch.market_context, "decisions": jsonable_encoder(decisions)}

    @app.post("/api/run")
    async def run() -> dict[str, Any]:
        svc = _require_services()
        try:
            report = await _run_work(svc.run_cycle)
        except MarketDataUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return jsonable_encoder(report.to_dict())

    @app.post("/api/cycle")
    async def cycle(payload: dict[str, Any]) -> dict[str, Any]:
        """Run one cycle over a caller-supplied batch."""
        svc = _require_services()
        observations, context = _parse_observations(payload)
        report = await _run_work(svc.run_cycle, observations, context)
        return jsonable_encoder(report.to_dict())

    @app.post("/api/buy")
    async def buy(payload: dict[str, Any]) -> dict[str, Any]:
        svc = _require_services()
        symbol, price = _parse_symbol_price(payload, price_required=True)
        amount = payload.get("amount")
        if amount is not None:
            try:
                amount = int(amount)
            except (TypeError, ValueError) as e:
                raise HTTPException(status_code=400, detail="'amount' must be an integer") from e
            if amount <= 0:
                raise HTTPException(status_code=400, detail="'amount' must be positive")
        trade = await _run_work(svc.manual_buy, symbol, price, amount)
        return {"executed": trade is not None, "trade": trade.to_dict() if trade else None}

    @app.post("/api/sell")
    async def sell(payload: dict[str, Any]) -> dict[str, Any]:
        svc = _require_services()
        symbol, price = _parse_symbol_price(payload, price_required=False)
        if not svc.ledger.has_position(symbol):
            raise HTTPException(status_code=404, detail=f"No open position for {symbol}")
        trade = await _run_work(svc.manual_sell, symbol, price)
        return {"executed": trade is not None, "trade": trade.to_dict() if trade else None}

    @app.post("/api/retrain")
    async def retrain() -> dict[str, Any]:
        svc = _require_services()
        count = await _run_work(svc.feedback.retrain)
        return {"examples": count, "predictor": svc.predictor.to_dict()}

    @app.post("/api/backtest")
    async def backtest(payload: dict[str, Any]) -> dict[str, Any]:
        svc = _require_services()
        bars = payload.get("bars") if isinstance(payload, dict) else None
        if not isinstance(bars, list) or not bars:
            raise HTTPException(status_code=400, detail="'bars' must be a non-empty list")
        result = await _run_work(run_backtest, bars, svc.config, svc.predictor)
        return jsonable_encoder(result.to_dict())

    return app


def create_server_app() -> FastAPI:
    """uvicorn factory for `api_server.py`: the API process also drives the scheduler."""
    return create_app(run_scheduler=True)
