"""Entry point for the PowerPulse delivery API.

Starts the FastAPI application with Uvicorn.  The in-process delivery
scheduler is started by the application itself on startup, so running
this single file is enough for a complete deployment (for example under
Docker or a process manager where only one Python file is specified).

Host and port are read from ``API_HOST`` and ``API_PORT``; all other
configuration comes from the environment, see
``powerpulse_api/app/core/config.py``.

Usage:
    python run.py
"""
import asyncio
import logging
import os

from uvicorn import Config, Server

from powerpulse_api.app.main import app


async def run_api() -> None:
    """Serve the API until the process is stopped.

    Defaults are ``0.0.0.0`` and ``8000``.
    """
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    config = Config(app=app, host=host, port=port, reload=False, log_level="info")
    server = Server(config)
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(run_api())
    except (KeyboardInterrupt, SystemExit):
        logging.getLogger(__name__).info("Shutting down")
