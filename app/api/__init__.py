"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import classification, contexts, embeddings

router = APIRouter()

# Catalog suggestions
router.include_router(classification.router, prefix="/classification", tags=["classification"])

# Context windows and RAG retrieval
router.include_router(contexts.router, prefix="/conversations", tags=["contexts"])

# Embedding queue and reconciliation
router.include_router(embeddings.router, prefix="/embeddings", tags=["embeddings"])
