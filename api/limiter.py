"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware via app.state.limiter) and
api/routes/v1/auth.py (per-route limits on login and register).

A single shared instance means every route shares one counter store. The
in-memory store counts per process; run behind a single worker or point
storage_uri at Redis when scaling out.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
