"""
===============================================================================
CRC CARD: router.py (root router composition)
===============================================================================

Responsibilities:
  - Compose the feature routers into one APIRouter mounted under /v1.

Collaborators:
  - routers.answer, routers.chunks
===============================================================================
"""

from fastapi import APIRouter

from .routers import answer_router, chunks_router

router = APIRouter()
router.include_router(answer_router)
router.include_router(chunks_router)
