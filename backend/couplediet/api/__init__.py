from .auth import router as auth_router
from .couples import router as couples_router
from .meals import router as meals_router

__all__ = [
    "auth_router",
    "couples_router",
    "meals_router",
]
