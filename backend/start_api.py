#!/usr/bin/env python3
"""
metricsync Diagnostics API Startup Script

Starts the FastAPI app exposing queue, job-outcome, worker-heartbeat and
hierarchy-mismatch endpoints.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the diagnostics API server."""
    print("🚀 Starting metricsync diagnostics API...")
    print("   📖 Swagger UI: http://localhost:8000/docs")
    print("   🔐 Admin endpoints need the X-Admin-Secret header")
    print("")

    if not Path(".env").exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Set at least DATABASE_URL, REDIS_URL and ADMIN_SECRET")
        print("")

    try:
        uvicorn.run(
            "metricsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["metricsync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down metricsync API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
