# margin_leakage/main.py
"""
FastAPI application for margin leakage analysis.

- Upload and combine spreadsheets
- Five-step LLM margin pipeline with persisted reports
- Supplementary rule and outlier checks
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from fastapi.exceptions import RequestValidationError

from .core.config import get_settings
from .core.dependencies import get_analysis_service
from .core.exceptions import (
    AnalysisError, analysis_error_handler, validation_error_handler,
    http_error_handler, general_error_handler
)
from .api import health, files, combine, margin, reports, checks

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    print(f"🚀 Starting {settings.app_name} v{settings.app_version}")

    async def cleanup_sessions():
        """Periodic cleanup of old background runs."""
        while True:
            try:
                service = app.dependency_overrides.get(get_analysis_service, get_analysis_service)()
                service.cleanup_old_sessions(
                    max_age_minutes=settings.session_timeout_minutes
                )
                await asyncio.sleep(300)  # Run every 5 minutes
            except Exception as e:
                print(f"Session cleanup error: {e}")
                await asyncio.sleep(60)  # Retry after 1 minute

    # Start cleanup task
    cleanup_task = asyncio.create_task(cleanup_sessions())

    yield

    # Shutdown
    print("🛑 Shutting down application...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

def create_application() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=settings.cors_methods,
        allow_headers=settings.cors_headers,
    )

    # Register exception handlers
    app.add_exception_handler(AnalysisError, analysis_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, general_error_handler)

    # Include routers
    app.include_router(health.router)
    app.include_router(files.router)
    app.include_router(combine.router)
    app.include_router(margin.router)
    app.include_router(reports.router)
    app.include_router(checks.router)

    @app.get("/", response_class=HTMLResponse)
    async def serve_index():
        """Serve a simple API info page."""
        return HTMLResponse(f"""
            <html>
                <head><title>{settings.app_name}</title></head>
                <body>
                    <h1>{settings.app_name}</h1>
                    <p>Version: {settings.app_version}</p>
                    <p>API Documentation: <a href="/docs">/docs</a></p>
                    <p>Health Check: <a href="/health">/health</a></p>
                    <ul>
                        <li>POST /api/upload, POST /api/session, POST /api/combine</li>
                        <li>POST /api/margin/{{pricing,costs,leakage,segments,recommendations}}</li>
                        <li>POST /api/margin/run, GET /api/margin/logs/{{run_id}}</li>
                        <li>GET /api/margin-report/{{run_id}}/view, GET /api/margin-report/{{run_id}}/download</li>
                    </ul>
                </body>
            </html>
        """)

    return app

# Create the application
app = create_application()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "margin_leakage.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info"
    )
