"""
Invoice Review API: FastAPI backend.

Upload documents for extraction, review the extracted invoices, and
reconcile approved invoices against project estimates.

All state lives in a single SQLite database (output/pipeline.db).

Endpoints
---------
  GET  /api/health                      → liveness probe
  POST /api/upload                      → upload a PDF, run extraction, return the job result
  GET  /api/invoices                    → list summaries (?status=, ?project_id=, ?document_id=)
  GET  /api/invoices/{id}               → full invoice with current (corrected) values
  POST /api/invoices/{id}/approve       → approve, optionally with corrected fields
  POST /api/invoices/{id}/reject        → reject with a reason
  POST /api/projects/{id}/match         → reconcile approved invoices against the estimate
  GET  /api/projects/{id}/match         → last stored MatchResult
  GET  /api/training/stats              → training example / correction / pattern counts
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile

# ---------------------------------------------------------------------------
# Bootstrap: add project root to path so the pipeline package imports
# ---------------------------------------------------------------------------
_PIPELINE_DIR = Path(__file__).parent.parent
if str(_PIPELINE_DIR) not in sys.path:
    sys.path.insert(0, str(_PIPELINE_DIR))

from config import Config  # noqa: E402
from dashboard.models import ApproveRequest, MatchRequest, RejectRequest  # noqa: E402
from models.document import UploadedDocument  # noqa: E402
from models.estimate import EstimateCategory, ProjectEstimate  # noqa: E402
from pipeline.errors import EmptyDocument, InvoiceNotFound, ReviewStateError  # noqa: E402
from pipeline.processor import InvoiceProcessor  # noqa: E402

logger = logging.getLogger(__name__)

ALLOWED_SUFFIXES = (".pdf", ".txt")
ALLOWED_CHANNELS = ("internal", "supplier_portal")

# ---------------------------------------------------------------------------
# Processor (lazy, created on first request so importing the app never
# touches the database or provider SDKs)
# ---------------------------------------------------------------------------
_processor: Optional[InvoiceProcessor] = None


def get_processor() -> InvoiceProcessor:
    global _processor
    if _processor is None:
        _processor = InvoiceProcessor(Config())
    return _processor


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Invoice Review API", docs_url=None, redoc_url=None)


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    config = get_processor().config
    return {
        "status":        "ok",
        "db_path":       str(config.db_path),
        "db_exists":     config.db_path.exists(),
        "providers":     list(config.provider_order),
        "estimates_csv": str(config.estimates_csv),
    }


@app.post("/api/upload")
async def upload_document(
    file: UploadFile = File(...),
    channel: str = Form(default="internal"),
    project_id: Optional[str] = Form(default=None),
):
    """
    Upload an invoice document and extract every invoice in it.

    Responds with the full ExtractionJobResult.  Page groups no provider
    could read are listed under "failures" for manual entry.
    """
    filename = file.filename or ""
    if not filename.lower().endswith(ALLOWED_SUFFIXES):
        raise HTTPException(400, f"Only {', '.join(ALLOWED_SUFFIXES)} files are accepted")
    if channel not in ALLOWED_CHANNELS:
        raise HTTPException(400, f"channel must be one of: {', '.join(ALLOWED_CHANNELS)}")

    contents = await file.read()
    if len(contents) == 0:
        raise HTTPException(400, "Uploaded file is empty")

    document = UploadedDocument.from_bytes(
        Path(filename).name, contents, channel=channel, project_id=project_id or None
    )
    logger.info("Document uploaded: %s (%d bytes, %s)", document.filename, document.size, channel)

    try:
        result = await get_processor().process(document)
    except EmptyDocument as e:
        raise HTTPException(422, str(e))
    return result.model_dump(mode="json")


@app.get("/api/invoices")
def list_invoices(
    status: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    document_id: Optional[str] = Query(default=None),
    limit: int = Query(default=500, le=2000),
    offset: int = Query(default=0, ge=0),
):
    try:
        return get_processor().db.list_invoices(
            status=status or None,
            project_id=project_id or None,
            document_id=document_id or None,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))


@app.get("/api/invoices/{invoice_id}")
def get_invoice(invoice_id: str):
    processor = get_processor()
    try:
        invoice = processor.training.get_invoice(invoice_id)
    except InvoiceNotFound:
        raise HTTPException(status_code=404, detail=f"Invoice not found: {invoice_id}")

    data = invoice.model_dump(mode="json")
    data["current_values"] = processor.training.current_values(invoice)
    data["corrections"] = [c.model_dump(mode="json") for c in processor.db.get_corrections(invoice_id)]
    data["audit_log"] = processor.db.get_audit_log(invoice_id)
    return data


@app.post("/api/invoices/{invoice_id}/approve")
def approve_invoice(invoice_id: str, body: Optional[ApproveRequest] = None):
    body = body or ApproveRequest()
    try:
        example = get_processor().approve(invoice_id, body.corrected_fields, actor=body.actor)
    except InvoiceNotFound:
        raise HTTPException(404, f"Invoice not found: {invoice_id}")
    except ReviewStateError as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {
        "id":                  invoice_id,
        "status":              "approved",
        "training_example_id": example.id,
        "corrections":         [c.model_dump(mode="json") for c in example.corrections],
    }


@app.post("/api/invoices/{invoice_id}/reject")
def reject_invoice(invoice_id: str, body: RejectRequest):
    try:
        get_processor().reject(invoice_id, body.reason, actor=body.actor)
    except InvoiceNotFound:
        raise HTTPException(404, f"Invoice not found: {invoice_id}")
    except ReviewStateError as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"id": invoice_id, "status": "rejected", "reason": body.reason.strip()}


@app.post("/api/projects/{project_id}/match")
def match_project(project_id: str, body: Optional[MatchRequest] = None):
    estimate = None
    if body is not None and body.categories is not None:
        estimate = ProjectEstimate(
            project_id=project_id,
            categories=[EstimateCategory(**c.model_dump()) for c in body.categories],
        )
    result = get_processor().match_project(project_id, estimate)
    return result.model_dump(mode="json")


@app.get("/api/projects/{project_id}/match")
def get_match(project_id: str):
    result = get_processor().db.get_match_result(project_id)
    if result is None:
        raise HTTPException(404, f"No match result for project: {project_id}")
    return result.model_dump(mode="json")


@app.get("/api/training/stats")
def training_stats():
    return get_processor().training.stats()
