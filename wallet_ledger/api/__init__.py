"""
Wallet Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .dependencies import LedgerSystem, get_ledger_system
from .transfers import router as transfers_router, history_router
from .wallets import router as wallets_router
from ..config import WalletLedgerConfig, get_config
from ..errors import StoreUnavailable, WalletLedgerError
from ..ledger import LedgerStore
from ..logging_config import get_logger, log_action, setup_logging

logger = get_logger("wallet_ledger.api")


def _validation_message(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(problems) or "Invalid request"


def create_app(system: Optional[LedgerSystem] = None,
               config: Optional[WalletLedgerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or (system.config if system else get_config())
    system = system or LedgerSystem(config)
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Close storage, quote client and notification workers on shutdown"""
        yield
        system.close()
    
    app = FastAPI(
        title="Wallet Ledger API",
        description="Custodial balance ledger with signature-authorized transfers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    @app.exception_handler(WalletLedgerError)
    async def handle_ledger_error(request: Request, exc: WalletLedgerError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    
    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": _validation_message(exc), "code": "validation_error"}
        )
    
    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        log_action(
            logger, "error", f"Unhandled error: {exc}",
            action="request", resource=str(request.url.path)
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "internal_error"}
        )
    
    app.include_router(wallets_router, prefix="/api/wallet", tags=["Wallets"])
    app.include_router(transfers_router, prefix="/api/transfer", tags=["Transfers"])
    app.include_router(history_router, prefix="/api/transactions", tags=["History"])
    
    @app.get("/health")
    def health_check(ledger_system: LedgerSystem = Depends(get_ledger_system)):
        """Health check endpoint"""
        try:
            ledger_system.storage.count(LedgerStore.ACCOUNTS_TABLE)
            storage_ok = True
        except StoreUnavailable:
            storage_ok = False
        oracle_ok = ledger_system.quote_oracle.health_check()
        
        return {
            "status": "healthy" if storage_ok and oracle_ok else "degraded",
            "storage": "healthy" if storage_ok else "unavailable",
            "quoteOracle": "healthy" if oracle_ok else "unavailable",
            "service": "wallet_ledger",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API with uvicorn using configured defaults"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(create_app(config=config), host=host or config.api_host, port=port or config.api_port)
