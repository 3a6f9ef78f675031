"""
asgi.py -- ASGI entry point for TicketGate.

Run with:  uvicorn asgi:app --host 0.0.0.0 --port 8000

api/main.py assembles the application (routers, middleware, lifespan);
this module only exposes it under the conventional name.
"""

from api.main import app

__all__ = ["app"]
