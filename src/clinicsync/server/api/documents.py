"""Collection read and batch write API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from clinicsync.server.api.deps import get_current_token, get_db, get_device_id, get_hub
from clinicsync.server.database import BatchError, Database, Write
from clinicsync.server.models import Token
from clinicsync.server.schemas import (
    BatchRequest,
    BatchResponse,
    DocumentListResponse,
    document_to_response,
)
from clinicsync.server.ws import ChangeHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["documents"])


@router.get("/collections/{collection}/documents", response_model=DocumentListResponse)
def list_documents(
    collection: str,
    db: Database = Depends(get_db),
    _token: Token = Depends(get_current_token),
) -> DocumentListResponse:
    """Read every document of a collection."""
    documents = db.list_documents(collection)
    return DocumentListResponse(documents=[document_to_response(d) for d in documents])


@router.post("/batch", response_model=BatchResponse)
async def commit_batch(
    request: BatchRequest,
    db: Database = Depends(get_db),
    hub: ChangeHub = Depends(get_hub),
    device_id: str | None = Depends(get_device_id),
    _token: Token = Depends(get_current_token),
) -> BatchResponse:
    """Apply a batch of upserts and deletes, all or nothing.

    Upserts merge their fields into the existing document. The resulting
    changes are pushed to the subscribers of each collection.
    """
    writes = [Write(w.op, w.collection, w.doc_id, w.fields) for w in request.writes]
    try:
        changes = await run_in_threadpool(db.apply_batch, writes, device_id)
    except BatchError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    logger.info(
        "Batch from %s: %d writes, %d changes", device_id or "unknown", len(writes), len(changes)
    )
    await hub.publish(changes)
    return BatchResponse(applied=len(writes), changes=len(changes))
