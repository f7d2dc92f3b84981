from .bindings import router as bindings_router
from .content import router as content_router
from .health import router as health_router

__all__ = [
    "bindings_router",
    "content_router",
    "health_router",
]
