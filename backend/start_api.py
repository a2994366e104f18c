#!/usr/bin/env python3
"""
Conversion Relay Monitoring API Startup Script

Starts the FastAPI monitoring app (queue stats, dead letters, healthcheck).
Workers are started separately with conversion_relay.workers.start_arq_worker.
"""

import os
import sys
from pathlib import Path

import uvicorn


def main():
    """Start the monitoring API server."""
    port = int(os.getenv("PORT", "8000"))
    print("Starting Conversion Relay monitoring API...")
    print(f"   Queue stats:  http://localhost:{port}/monitoring/queues")
    print(f"   Swagger UI:   http://localhost:{port}/docs")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Export these variables or put them in backend/.env:")
        print("   REDIS_URL=redis://localhost:6379")
        print("   SENTRY_DSN=<optional>")
        print("")

    try:
        uvicorn.run(
            "conversion_relay.main:create_app",
            factory=True,
            host="0.0.0.0",
            port=port,
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down monitoring API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
