from fastapi import Header

from app.db import get_db


def get_actor(x_actor: str | None = Header(default=None, max_length=120)) -> str | None:
    """Who is performing the request, recorded on every event it produces."""
    return x_actor


__all__ = ["get_actor", "get_db"]
