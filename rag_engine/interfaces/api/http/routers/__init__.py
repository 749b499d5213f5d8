from .answer import router as answer_router
from .chunks import router as chunks_router

__all__ = ["answer_router", "chunks_router"]
