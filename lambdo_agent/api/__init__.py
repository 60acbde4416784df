# API handlers and routes module
from .handlers import APIHandlers, error_response
from .routes import register_routes

__all__ = ["APIHandlers", "error_response", "register_routes"]
