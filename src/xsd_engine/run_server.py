"""Executable entry point for launching the XSD Engine FastAPI application.

Environment Variables:
    PORT (int): Override listening port (default 8000).

Example:
    $ python -m xsd_engine.run_server
    $ PORT=9000 python -m xsd_engine.run_server

For production, run uvicorn directly to tune workers:
    uvicorn xsd_engine.app:app --host 0.0.0.0 --port 8000 --workers 4
"""

from __future__ import annotations

import os

import uvicorn

from .app import app


def main() -> None:
    """Launch the ASGI server, reading ``PORT`` (default 8000)."""
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
