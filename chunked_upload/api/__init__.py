"""API module exports"""
from .endpoints import router

__all__ = ["router"]
