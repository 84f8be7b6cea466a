#!/usr/bin/env python3
"""
On-page analytics API startup script.

Runs the FastAPI app with auto-reload for local development. Both datastore
URLs must be set (environment or .env) before the first report request.
"""

import sys
from pathlib import Path

import uvicorn


REQUIRED_ENV = ("BEHAVIORAL_DATABASE_URL", "CONVERSION_DATABASE_URL")


def main():
    """Start the on-page analytics API server."""
    print("Starting on-page analytics API...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   Health:      http://localhost:8000/health")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with these variables:")
        for name in REQUIRED_ENV:
            print(f"   {name}=...")
        print("")

    try:
        uvicorn.run(
            "onpage.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["onpage"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down on-page analytics API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
