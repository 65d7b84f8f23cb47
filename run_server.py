#!/usr/bin/env python3
"""
Startup script for the Margin Leakage Analyzer API.

This script provides an easy way to start the server with proper configuration.
"""

import uvicorn
from margin_leakage.core.config import get_settings
from margin_leakage.utils.helpers import mask_secret

def main():
    """Start the FastAPI server."""
    settings = get_settings()

    print(f"🚀 Starting {settings.app_name} v{settings.app_version}")
    print(f"📊 Debug mode: {'ON' if settings.debug else 'OFF'}")
    print(f"🗄️  MongoDB database: {settings.mongodb_db} (bucket: {settings.mongodb_bucket})")
    print(f"🤖 Vertex AI project: {settings.vertex_project or '<not set>'} ({settings.vertex_location})")
    print(f"🔑 OpenRouter key: {mask_secret(settings.openrouter_api_key)} (model: {settings.openrouter_model})")
    print(f"📁 Max file size: {settings.max_file_size / (1024*1024):.0f}MB")
    print(f"⏱️  Session timeout: {settings.session_timeout_minutes} minutes")
    print()
    print("🌐 Server will be available at:")
    print("   • Main API: http://localhost:8000")
    print("   • Health Check: http://localhost:8000/health")
    print("   • API Docs: http://localhost:8000/docs")
    print()

    uvicorn.run(
        "margin_leakage.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
        access_log=True
    )

if __name__ == "__main__":
    main()
