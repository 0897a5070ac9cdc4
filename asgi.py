"""
asgi.py -- Application assembly for FlexFlow.

Process managers point here rather than at api/main.py so the import path
stays stable if more routers are mounted later.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
