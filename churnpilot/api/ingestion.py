"""Ingestion API — live events, bulk CSV upload, reprocessing and customer lookup."""

import csv
import io
import logging

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from churnpilot.config import get_settings
from churnpilot.database import get_db
from churnpilot.schemas import BulkIngestionOut, CustomerOut, ScoringOut
from churnpilot.services.ingestion import get_customer, ingest_event, ingest_rows, reprocess_owner

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ingestion"])
settings = get_settings()


@router.post("/ingest/event", response_model=ScoringOut)
async def ingest_single(
    payload: dict = Body(...),
    owner_id: str | None = Query(None),
    run_playbooks: bool = True,
    db: AsyncSession = Depends(get_db),
):
    """Score one customer record and run the owner's playbooks against it.

    An unresolvable customer key answers 422 with the aliases that were tried.
    """
    result = await ingest_event(db, payload, owner_id=owner_id, run_playbooks=run_playbooks)
    return result.to_dict()


@router.post("/ingest/csv", response_model=BulkIngestionOut)
async def ingest_csv(
    file: UploadFile = File(...),
    owner_id: str = Query(...),
):
    """
    Bulk-ingest customers from a CSV file.

    - UTF-8, optional BOM; column names are matched through the alias table
    - Rows are processed in small concurrent groups
    - A bad row is counted and reported, it never aborts the upload
    """
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(400, "Only CSV files are supported")

    content = await file.read()
    if len(content) > settings.bulk_max_file_bytes:
        raise HTTPException(400, f"File too large. Max: {settings.bulk_max_file_bytes // 1024 // 1024} MB")

    text = content.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    rows, truncated = [], 0
    for row in reader:
        if len(rows) >= settings.bulk_max_rows:
            truncated += 1
            continue
        rows.append(dict(row))

    # Header is line 1, so data rows start at 2
    report = await ingest_rows(rows, owner_id=owner_id, first_row_number=2)
    if truncated:
        report.truncated = truncated
        logger.warning(f"CSV upload for {owner_id!r}: {truncated} rows over the row limit skipped")
    return report.to_dict()


@router.post("/ingest/reprocess", response_model=BulkIngestionOut)
async def reprocess(owner_id: str = Query(...), db: AsyncSession = Depends(get_db)):
    """Re-score every stored customer of an owner and re-run playbooks."""
    report = await reprocess_owner(db, owner_id)
    return report.to_dict()


@router.get("/customers/{customer_id}", response_model=CustomerOut)
async def read_customer(
    customer_id: str,
    owner_id: str = Query(""),
    db: AsyncSession = Depends(get_db),
):
    record = await get_customer(db, owner_id, customer_id)
    if not record:
        raise HTTPException(404, "Customer not found")
    return CustomerOut.from_model(record)
