"""Backfill, spreadsheet import and repair routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import get_db, get_session_factory
from ..errors import MalformedInputError, UpstreamError
from ..schemas.events import CorrectionsRequest, CsvImportRequest, RepairRequest
from ..schemas.reports import BackfillReport, ImportReport, RepairReport
from ..services import repair_svc
from ..sync.backfill import run_backfill
from ..sync.csv_import import import_spreadsheet
from ..sync.lms_client import LMSClient

router = APIRouter(prefix="/sync", tags=["sync"])


async def get_lms_client():
    """FastAPI dependency that yields a configured LMS client."""
    if not settings.lms_configured:
        raise HTTPException(status_code=503, detail="LMS credentials are not configured")
    async with LMSClient() as client:
        yield client


@router.post("/backfill/{group_id}", response_model=BackfillReport)
async def backfill_group(
    group_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: LMSClient = Depends(get_lms_client),
):
    try:
        return await run_backfill(session_factory, client, group_id)
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=e.message)


@router.post("/import", response_model=ImportReport)
async def import_csv(
    payload: CsvImportRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await import_spreadsheet(db, payload.csv_text, payload.profile)
    except MalformedInputError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.post("/repair/payload", response_model=RepairReport)
async def repair_payload(
    payload: RepairRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await repair_svc.repair_from_payloads(db, payload.fields, dry_run=payload.dry_run)
    except MalformedInputError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.post("/repair/corrections", response_model=RepairReport)
async def repair_corrections(
    payload: CorrectionsRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await repair_svc.repair_from_corrections(
            db, payload.csv_text, payload.fields, dry_run=payload.dry_run
        )
    except MalformedInputError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.post("/repair/course-names", response_model=RepairReport)
async def repair_course_names(
    payload: RepairRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    dry_run = payload.dry_run if payload else False
    return await repair_svc.repair_course_names(db, dry_run=dry_run)


@router.post("/repair/rebuild", response_model=RepairReport)
async def repair_rebuild(
    payload: RepairRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    dry_run = payload.dry_run if payload else False
    return await repair_svc.rebuild_from_raw_log(db, dry_run=dry_run)
