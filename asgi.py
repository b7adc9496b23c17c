"""
asgi.py -- ASGI entry point for moodledger.

Run with:  uvicorn asgi:app --reload

api/main.py builds the FastAPI app; servers import it from here.
"""

from api.main import app

__all__ = ["app"]
