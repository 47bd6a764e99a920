from .context import router as context_router
from .fragments import router as fragments_router
from .maintenance import router as maintenance_router
from .memos import router as memos_router

__all__ = ["context_router", "fragments_router", "maintenance_router", "memos_router"]
