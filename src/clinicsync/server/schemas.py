"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from clinicsync.server.models import Document

# === Document schemas ===


class DocumentResponse(BaseModel):
    """A document in responses (fields are wire-encoded)."""

    id: str
    fields: dict[str, Any]


class DocumentListResponse(BaseModel):
    """Response for a full collection read."""

    documents: list[DocumentResponse]


# === Batch schemas ===


class WriteRequest(BaseModel):
    """One write of a batch."""

    op: Literal["upsert", "delete"]
    collection: str = Field(min_length=1)
    doc_id: str = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    """Request body for an all-or-nothing batch."""

    writes: list[WriteRequest]


class BatchResponse(BaseModel):
    """Response for a committed batch."""

    applied: int
    changes: int


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


# === Converters ===


def document_to_response(document: Document) -> DocumentResponse:
    """Convert Document to response model."""
    return DocumentResponse(id=document.doc_id, fields=document.data)
