"""
Sync Authority API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .auth import AuthoritySystem, get_system
from .login import router as login_router
from .otp import router as otp_router
from .sync import router as sync_router


def create_app(system: Optional[AuthoritySystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or get_system()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.startup()
        try:
            yield
        finally:
            await system.shutdown()

    app = FastAPI(
        title="Banking Sync Authority API",
        description="OTP authority and cross-device record synchronization",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.dependency_overrides[get_system] = lambda: system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=system.config.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(otp_router, prefix="/otp", tags=["OTP"])
    app.include_router(sync_router, prefix="/sync", tags=["Sync"])
    app.include_router(login_router, prefix="/auth", tags=["Auth"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banking_sync_authority",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Banking Sync Authority API",
            "version": __version__,
            "description": "OTP-gated authorization and last-writer-wins record sync",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "otp": ["/otp/issue", "/otp/verify", "/otp/clear", "/otp/status"],
                "profile": "/sync/profile/{email}",
                "balance": "/sync/balance",
                "registry": "/sync/registry",
                "global_policy": "/sync/policy/global",
                "user_policy": ["/sync/policy/user/{id}", "/sync/policy/user/bulk"],
                "transactions": ["/sync/transactions/{email}", "/sync/transactions"],
                "auth": ["/auth/login", "/auth/login/verify", "/auth/me"],
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 3001, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "banking_sync.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
