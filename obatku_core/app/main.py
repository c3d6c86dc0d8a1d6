import os
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .db import create_db_and_tables
from .auth import router as auth_router
from .users import router as users_router
from .routers.qrcode import router as qrcode_router
from .routers.masters import router as masters_router


def get_cors_origins():
    """Get CORS origins from environment or use defaults for development"""
    origins_env = os.getenv("CORS_ORIGINS", "")
    if origins_env:
        return [o.strip() for o in origins_env.split(",") if o.strip()]
    # Default development origins
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


def configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Obatku Medicine QR Service",
        description="QR label codes for medicine units and packages: allocation, scanning and lifecycle",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(qrcode_router)
    app.include_router(masters_router)

    @app.on_event("startup")
    def on_startup():
        print("[obatku_core] Creating database tables at startup...")
        create_db_and_tables()
        print("[obatku_core] Database ready.")

    return app


app = create_app()
