from .proxy import proxy_router

__all__ = ["proxy_router"]
