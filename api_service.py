"""
HTTP API for the Lead Enrichment Console
Exposes import, processing, history, export and webhook sync over one console session
"""
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from loguru import logger
from pydantic import BaseModel

from app_context import AppContext, BusyError
from auth_service import AuthError, UserSession
from history_manager import HistoryLoadError, format_history_input, format_history_result
from models import ColumnMapping, FeatureMode, HistoryEntry, ProspectRow, StatusCount
from spreadsheet import SpreadsheetImportError
from sync_service import WebhookError

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# Pydantic models for API requests
class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


class SignInRequest(BaseModel):
    email: str
    password: str


class ModeRequest(BaseModel):
    mode: FeatureMode


class SingleRequest(BaseModel):
    """Request model for a single-entry lookup"""
    name: str = ""
    company: str = ""
    email: str = ""
    retry: bool = False


class UploadResponse(BaseModel):
    filename: str
    headers: List[str]
    mapping: ColumnMapping
    total_rows: int


class BatchResponse(BaseModel):
    """Response model for a processed batch"""
    history_id: Optional[str] = None
    rows: List[ProspectRow]
    stats: List[StatusCount]
    retried: Optional[List[int]] = None


class SingleResponse(BaseModel):
    history_id: Optional[str] = None
    row: ProspectRow
    cached: bool
    message: Optional[str] = None


class HistoryItem(BaseModel):
    """History entry as listed, without row snapshots"""
    id: str
    kind: str
    feature: str
    input: str
    result: str
    display_input: str
    display_result: str
    status: str
    timestamp: int
    has_cached: bool
    synced: bool

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "HistoryItem":
        return cls(
            id=entry.id,
            kind=entry.kind,
            feature=entry.feature,
            input=entry.input,
            result=entry.result,
            display_input=format_history_input(entry),
            display_result=format_history_result(entry.result),
            status=entry.status,
            timestamp=entry.timestamp,
            has_cached=entry.has_cached,
            synced=entry.synced,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan manager"""
    logger.info("Starting Lead Enrichment API Service")
    if getattr(app.state, "context", None) is None:
        app.state.context = AppContext()
    yield
    logger.info("Shutting down Lead Enrichment API Service")
    await app.state.context.close()


# Create FastAPI app
app = FastAPI(
    title="Lead Enrichment API",
    description="Email finding, email verification and LinkedIn lookup over spreadsheets",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service is not initialized")
    return context


@app.get("/ping")
async def ping():
    """Simple ping endpoint to check service availability"""
    return {
        "ping": "pong",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "lead-enrichment-api"
    }


@app.get("/health")
async def health_check(context: AppContext = Depends(get_context)):
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "service": "lead-enrichment-api",
        "mode": context.mode,
        "signed_in": context.user_id is not None,
        "processing": context.is_processing,
    }


# Auth

@app.post("/auth/signup", response_model=Optional[UserSession])
async def sign_up(request: SignUpRequest, context: AppContext = Depends(get_context)):
    try:
        return await context.sign_up(request.email, request.password, request.full_name)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


@app.post("/auth/signin", response_model=UserSession)
async def sign_in(request: SignInRequest, context: AppContext = Depends(get_context)):
    try:
        return await context.sign_in(request.email, request.password)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


@app.post("/auth/signout")
async def sign_out(context: AppContext = Depends(get_context)):
    await context.sign_out()
    return {"signed_out": True}


@app.get("/auth/session", response_model=Optional[UserSession])
async def current_session(context: AppContext = Depends(get_context)):
    return context.session


# Working set

@app.post("/mode")
async def switch_mode(request: ModeRequest, context: AppContext = Depends(get_context)):
    """Change feature mode; clears the current rows"""
    if context.is_processing:
        raise HTTPException(status_code=409, detail="A batch is already running.")
    context.switch_mode(request.mode)
    return {"mode": context.mode}


@app.post("/upload", response_model=UploadResponse)
async def upload(file: UploadFile = File(...), context: AppContext = Depends(get_context)):
    """Import a spreadsheet as the working set"""
    content = await file.read()
    try:
        mapping = await context.import_file(file.filename or "upload", content)
    except SpreadsheetImportError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return UploadResponse(
        filename=file.filename or "upload",
        headers=context.headers,
        mapping=mapping,
        total_rows=len(context.rows),
    )


@app.put("/mapping", response_model=List[ProspectRow])
async def update_mapping(mapping: ColumnMapping, context: AppContext = Depends(get_context)):
    for header in (mapping.name_header, mapping.company_header, mapping.email_header):
        if header and header not in context.headers:
            raise HTTPException(status_code=400, detail=f"Unknown column: {header}")
    return context.update_mapping(mapping)


@app.get("/rows", response_model=List[ProspectRow])
async def list_rows(context: AppContext = Depends(get_context)):
    return context.rows


@app.post("/process", response_model=BatchResponse)
async def process(context: AppContext = Depends(get_context)):
    """Process every row of the working set"""
    try:
        entry = await context.run_batch()
    except BusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return BatchResponse(history_id=entry.id, rows=context.rows, stats=context.stats())


@app.post("/retry", response_model=BatchResponse)
async def retry(context: AppContext = Depends(get_context)):
    """Re-run failed, undeliverable and not found rows"""
    try:
        indices, entry = await context.retry_failed()
    except BusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return BatchResponse(
        history_id=entry.id if entry else context.current_history_id,
        rows=context.rows,
        stats=context.stats(),
        retried=indices,
    )


@app.post("/single", response_model=SingleResponse)
async def single(request: SingleRequest, context: AppContext = Depends(get_context)):
    """Look up one manually entered record"""
    try:
        lookup = await context.run_single(request.name, request.company, request.email, retry=request.retry)
    except BusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SingleResponse(
        history_id=context.current_history_id,
        row=lookup.row,
        cached=lookup.cached,
        message=lookup.message,
    )


@app.get("/stats", response_model=List[StatusCount])
async def stats(context: AppContext = Depends(get_context)):
    """Status chart data for the current rows"""
    return context.stats()


# History

@app.get("/history", response_model=List[HistoryItem])
async def list_history(mode: Optional[FeatureMode] = None, context: AppContext = Depends(get_context)):
    entries = context.history.buckets.for_mode(mode or context.mode)
    return [HistoryItem.from_entry(e) for e in entries]


@app.post("/history/{entry_id}/load")
async def load_history(entry_id: str, context: AppContext = Depends(get_context)):
    """Restore the working set from a history entry"""
    if context.is_processing:
        raise HTTPException(status_code=409, detail="A batch is already running.")
    try:
        loaded = await context.load_history(entry_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"History entry not found: {entry_id}")
    except HistoryLoadError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return loaded.model_dump()


# Export and sync

@app.get("/export/xlsx")
async def export_xlsx(context: AppContext = Depends(get_context)):
    return Response(
        content=context.export("xlsx"),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="lead_enrichment_results.xlsx"'},
    )


@app.get("/export/json")
async def export_json(context: AppContext = Depends(get_context)):
    return Response(
        content=context.export("json"),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="lead_enrichment_results.json"'},
    )


@app.post("/sync")
async def sync(context: AppContext = Depends(get_context)):
    """
    Send the current results to the configured webhook

    The webhook's reply is returned unchanged as a download; item and
    archive counts travel in X-Sync-* headers.
    """
    try:
        result = await context.sync_to_webhook()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WebhookError as e:
        logger.error(f"Webhook sync failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return Response(
        content=result.raw,
        media_type=result.content_type,
        headers={
            "Content-Disposition": 'attachment; filename="lead_enrichment_api_result.json"',
            "X-Sync-Items": str(len(result.items)),
            "X-Sync-Archived": str(result.archived),
            "X-Sync-Synced": "true" if result.synced else "false",
        },
    )


@app.get("/sync/results")
async def sync_results(context: AppContext = Depends(get_context)):
    """Archived webhook results for the current session"""
    try:
        return await context.get_api_results()
    except Exception as e:
        logger.error(f"Failed to fetch API results: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch API results.")


if __name__ == "__main__":
    # Setup logging
    from main import setup_logging
    setup_logging()

    # Get port from environment or default to 8000
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Lead Enrichment API Service on {host}:{port}")
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        access_log=False
    )
