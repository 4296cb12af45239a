#!/usr/bin/env python3
"""
Simple runner script for Whale Sonar.

This starts the service without needing to remember uvicorn commands.

Usage:
    python run.py

Or make it executable:
    chmod +x run.py
    ./run.py
"""
import uvicorn
import os

def main():
    # Get settings from environment
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "true").lower() == "true"

    print("""
    ╔═══════════════════════════════════════════════════════════╗
    ║                     🐋 Whale Sonar 🐋                     ║
    ╠═══════════════════════════════════════════════════════════╣
    ║  Starting server...                                       ║
    ║                                                           ║
    ║  API Docs:    http://{host}:{port}/docs                    ║
    ║  Health:      http://{host}:{port}/health                  ║
    ║  Ingest:      POST http://{host}:{port}/ingest             ║
    ║  Resolutions: POST http://{host}:{port}/resolutions/sync   ║
    ╚═══════════════════════════════════════════════════════════╝
    """.format(host=host, port=port))

    # Run the server
    uvicorn.run(
        "whale_sonar.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    main()
