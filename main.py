"""
main.py: server launcher and entry point.

Run this file to start the room booking API:

    python main.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import uvicorn


HOST = "127.0.0.1"
PORT = 8000


def main() -> None:
    """Start the room booking API server."""
    print("=" * 60)
    print("  Room Booking Core")
    print("=" * 60)
    print(f"  Server  : http://{HOST}:{PORT}")
    print(f"  API docs: http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Blocks until CTRL+C
    uvicorn.run(
        "app:app",       # points to app.py → app object
        host=HOST,
        port=PORT,
        reload=True,     # hot-reload on file changes during development
        log_level="info",
    )


if __name__ == "__main__":
    main()
