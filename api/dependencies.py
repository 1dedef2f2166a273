"""Shared FastAPI dependencies."""
from fastapi import Request

from engine import Engine

def get_engine(request: Request) -> Engine:
    """The engine created by the application lifespan."""
    return request.app.state.engine
