"""
SQLite persistence layer for the extraction and reconciliation pipeline.

A single database file (output/pipeline.db) holds:

  - documents          every uploaded file, byte-for-byte, for audit and re-processing
  - invoices           one row per extracted invoice (full ParsedInvoice as JSON
                       plus denormalised columns for filtering)
  - corrections        append-only reviewer edits; the current value of a field
                       is its latest correction
  - training_examples  append-only; never updated or deleted
  - learned_patterns   regexes derived from corrections, confidence grows on repeat
  - match_results      one row per project, replaced wholesale on every run
  - audit_log          who did what, when

Review status values
--------------------
  unreviewed  Fresh extraction waiting for a reviewer.
  approved    Reviewer accepted it (possibly with corrections).  Terminal.
  rejected    Reviewer discarded it with a reason.  Terminal.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from models.document import UploadedDocument
from models.estimate import MatchResult
from models.invoice import ParsedInvoice
from models.training import Correction, LearnedPattern, TrainingExample

logger = logging.getLogger(__name__)

STATUS_UNREVIEWED = "unreviewed"
STATUS_APPROVED   = "approved"
STATUS_REJECTED   = "rejected"
ALL_STATUSES      = {STATUS_UNREVIEWED, STATUS_APPROVED, STATUS_REJECTED}

LEARNED_PATTERN_INITIAL_CONFIDENCE = 0.7
LEARNED_PATTERN_STEP = 0.1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id            TEXT PRIMARY KEY,
    filename      TEXT NOT NULL,
    size          INTEGER NOT NULL,
    uploaded_at   TEXT NOT NULL,
    channel       TEXT NOT NULL,        -- internal | supplier_portal
    content_hash  TEXT NOT NULL,
    project_id    TEXT,
    page_count    INTEGER,
    content       BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS invoices (
    id                TEXT PRIMARY KEY,
    document_id       TEXT,
    project_id        TEXT,
    status            TEXT NOT NULL DEFAULT 'unreviewed',

    -- Key fields (denormalised for fast filtering / sorting)
    invoice_number    TEXT,
    vendor_name       TEXT,
    invoice_date      TEXT,
    total             REAL,
    confidence        REAL,
    needs_review      INTEGER NOT NULL DEFAULT 1,
    page_range        TEXT,
    provider          TEXT,

    -- Full ParsedInvoice as extracted (never rewritten by review)
    extracted_data    TEXT NOT NULL,
    -- Page text the invoice was extracted from (used to learn patterns)
    source_text       TEXT,

    rejection_reason  TEXT,
    created_at        TEXT NOT NULL,
    reviewed_at       TEXT
);

CREATE INDEX IF NOT EXISTS idx_invoices_status   ON invoices (status);
CREATE INDEX IF NOT EXISTS idx_invoices_project  ON invoices (project_id, status);
CREATE INDEX IF NOT EXISTS idx_invoices_document ON invoices (document_id);

CREATE TABLE IF NOT EXISTS corrections (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id       TEXT    NOT NULL,
    field            TEXT    NOT NULL,
    original_value   TEXT,               -- JSON
    corrected_value  TEXT,               -- JSON
    confidence       REAL    NOT NULL DEFAULT 1.0,
    sequence         INTEGER NOT NULL,
    created_at       TEXT    NOT NULL,
    UNIQUE (invoice_id, sequence)
);

CREATE INDEX IF NOT EXISTS idx_corrections_invoice ON corrections (invoice_id, sequence);

CREATE TABLE IF NOT EXISTS training_examples (
    id          TEXT PRIMARY KEY,
    invoice_id  TEXT NOT NULL,
    payload     TEXT NOT NULL,           -- TrainingExample JSON
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS learned_patterns (
    field       TEXT NOT NULL,
    pattern     TEXT NOT NULL,
    confidence  REAL NOT NULL,
    examples    TEXT NOT NULL,           -- JSON list of values seen
    updated_at  TEXT NOT NULL,
    PRIMARY KEY (field, pattern)
);

CREATE TABLE IF NOT EXISTS match_results (
    project_id   TEXT PRIMARY KEY,
    payload      TEXT NOT NULL,          -- MatchResult JSON
    computed_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id   TEXT    NOT NULL,       -- document, invoice or project id
    timestamp   TEXT    NOT NULL,       -- ISO-8601 UTC
    action      TEXT    NOT NULL,       -- uploaded | extracted | extraction_failed |
                                        -- approved | rejected | matched
    actor       TEXT    NOT NULL DEFAULT 'system',
    detail      TEXT                    -- optional JSON blob with action-specific context
);

CREATE INDEX IF NOT EXISTS idx_audit_entity    ON audit_log (entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp DESC);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Thin wrapper around an SQLite database file for pipeline state."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    # ------------------------------------------------------------------
    # Documents and extractions
    # ------------------------------------------------------------------

    def save_document(self, document: UploadedDocument, page_count: Optional[int] = None) -> None:
        """Store an uploaded document.  Re-saving the same id is a no-op."""
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    id, filename, size, uploaded_at, channel,
                    content_hash, project_id, page_count, content
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET page_count = excluded.page_count
                """,
                (
                    document.id,
                    document.filename,
                    document.size,
                    document.uploaded_at.isoformat(),
                    document.channel,
                    document.content_hash,
                    document.project_id,
                    page_count,
                    document.content,
                ),
            )
        self.log_audit(
            document.id, "uploaded",
            detail={"filename": document.filename, "channel": document.channel},
        )

    def get_document(self, document_id: str) -> Optional[UploadedDocument]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id=?", (document_id,)).fetchone()
        if row is None:
            return None
        return UploadedDocument(
            id=row["id"],
            filename=row["filename"],
            content=bytes(row["content"]),
            size=row["size"],
            uploaded_at=datetime.fromisoformat(row["uploaded_at"]),
            channel=row["channel"],
            content_hash=row["content_hash"],
            project_id=row["project_id"],
        )

    def save_extraction(
        self,
        invoices: list[ParsedInvoice],
        source_texts: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Insert all invoices from one extraction job in a single transaction,
        so a job is persisted completely or not at all.
        """
        source_texts = source_texts or {}
        now = _utcnow()
        with self._conn() as conn:
            for inv in invoices:
                conn.execute(
                    """
                    INSERT INTO invoices (
                        id, document_id, project_id, status,
                        invoice_number, vendor_name, invoice_date, total,
                        confidence, needs_review, page_range, provider,
                        extracted_data, source_text, created_at
                    ) VALUES (
                        :id, :document_id, :project_id, :status,
                        :invoice_number, :vendor_name, :invoice_date, :total,
                        :confidence, :needs_review, :page_range, :provider,
                        :extracted_data, :source_text, :created_at
                    )
                    """,
                    {
                        "id":             inv.id,
                        "document_id":    inv.document_id,
                        "project_id":     inv.project_id,
                        "status":         inv.status,
                        "invoice_number": inv.invoice_number,
                        "vendor_name":    inv.vendor_name,
                        "invoice_date":   inv.invoice_date,
                        "total":          inv.total,
                        "confidence":     inv.confidence,
                        "needs_review":   int(inv.needs_review),
                        "page_range":     inv.page_range,
                        "provider":       inv.provider,
                        "extracted_data": inv.model_dump_json(),
                        "source_text":    source_texts.get(inv.id),
                        "created_at":     now,
                    },
                )
        for inv in invoices:
            self.log_audit(
                inv.id, "extracted",
                detail={"document_id": inv.document_id, "provider": inv.provider,
                        "confidence": round(inv.confidence, 4)},
            )
        logger.info("DB stored %d invoice(s)", len(invoices))

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> ParsedInvoice:
        invoice = ParsedInvoice.model_validate_json(row["extracted_data"])
        invoice.status = row["status"]
        invoice.rejection_reason = row["rejection_reason"]
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[ParsedInvoice]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT extracted_data, status, rejection_reason FROM invoices WHERE id=?",
                (invoice_id,),
            ).fetchone()
        return self._row_to_invoice(row) if row else None

    def get_source_text(self, invoice_id: str) -> Optional[str]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT source_text FROM invoices WHERE id=?", (invoice_id,)
            ).fetchone()
        return row["source_text"] if row else None

    def list_invoices(
        self,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        document_id: Optional[str] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[dict]:
        """Return invoice summaries (no extracted_data blob) ordered newest-first."""
        clauses: list[str] = []
        params: list = []

        if status:
            if status not in ALL_STATUSES:
                raise ValueError(f"Invalid status {status!r}. Must be one of {ALL_STATUSES}")
            clauses.append("status = ?")
            params.append(status)
        if project_id:
            clauses.append("project_id = ?")
            params.append(project_id)
        if document_id:
            clauses.append("document_id = ?")
            params.append(document_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])

        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    id, document_id, project_id, status,
                    invoice_number, vendor_name, invoice_date, total,
                    confidence, needs_review, page_range, provider,
                    rejection_reason, created_at, reviewed_at
                FROM invoices
                {where}
                ORDER BY created_at DESC, id
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()

        return [dict(r) for r in rows]

    def approved_invoices(self, project_id: str) -> list[ParsedInvoice]:
        """Every invoice approved for the project at the time of the call."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT extracted_data, status, rejection_reason FROM invoices
                   WHERE project_id = ? AND status = 'approved'
                   ORDER BY id""",
                (project_id,),
            ).fetchall()
        return [self._row_to_invoice(r) for r in rows]

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def record_review(
        self,
        invoice_id: str,
        status: str,
        corrections: Optional[list[Correction]] = None,
        training_example: Optional[TrainingExample] = None,
        rejection_reason: Optional[str] = None,
        actor: str = "system",
    ) -> bool:
        """
        Move an unreviewed invoice to *status* and store its corrections and
        training example in the same transaction.

        Returns False (and writes nothing) if the invoice is not unreviewed.
        """
        if status not in (STATUS_APPROVED, STATUS_REJECTED):
            raise ValueError(f"Invalid review status {status!r}")

        now = _utcnow()
        with self._conn() as conn:
            conn.execute(
                """UPDATE invoices SET status=?, rejection_reason=?, reviewed_at=?
                   WHERE id=? AND status='unreviewed'""",
                (status, rejection_reason, now, invoice_id),
            )
            if conn.execute("SELECT changes()").fetchone()[0] == 0:
                return False

            for corr in corrections or []:
                conn.execute(
                    """INSERT INTO corrections (
                           invoice_id, field, original_value, corrected_value,
                           confidence, sequence, created_at
                       ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        corr.invoice_id,
                        corr.field,
                        json.dumps(corr.original_value),
                        json.dumps(corr.corrected_value),
                        corr.confidence,
                        corr.sequence,
                        corr.created_at.isoformat(),
                    ),
                )

            if training_example is not None:
                conn.execute(
                    "INSERT INTO training_examples (id, invoice_id, payload, created_at) VALUES (?, ?, ?, ?)",
                    (
                        training_example.id,
                        training_example.invoice_id,
                        training_example.model_dump_json(),
                        training_example.created_at.isoformat(),
                    ),
                )

            conn.execute(
                """INSERT INTO audit_log (entity_id, timestamp, action, actor, detail)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    invoice_id, now, status, actor,
                    json.dumps({
                        "corrected_fields": [c.field for c in corrections or []],
                        "reason": rejection_reason,
                    }),
                ),
            )
        return True

    def next_correction_sequence(self, invoice_id: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS seq FROM corrections WHERE invoice_id=?",
                (invoice_id,),
            ).fetchone()
        return row["seq"] + 1

    def get_corrections(self, invoice_id: str) -> list[Correction]:
        """All corrections for one invoice, in the order they were made."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM corrections WHERE invoice_id=?
                   ORDER BY sequence ASC, id ASC""",
                (invoice_id,),
            ).fetchall()
        return [
            Correction(
                invoice_id=r["invoice_id"],
                field=r["field"],
                original_value=json.loads(r["original_value"]) if r["original_value"] else None,
                corrected_value=json.loads(r["corrected_value"]) if r["corrected_value"] else None,
                confidence=r["confidence"],
                sequence=r["sequence"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def correction_counts(self) -> dict[str, int]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT field, COUNT(*) AS n FROM corrections GROUP BY field ORDER BY field"
            ).fetchall()
        return {r["field"]: r["n"] for r in rows}

    # ------------------------------------------------------------------
    # Training data
    # ------------------------------------------------------------------

    def list_training_examples(self) -> list[TrainingExample]:
        """All training examples, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT payload FROM training_examples ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [TrainingExample.model_validate_json(r["payload"]) for r in rows]

    def upsert_learned_pattern(self, field: str, pattern: str, example: str) -> LearnedPattern:
        """
        Record a pattern sighting.  New patterns start at 0.7 confidence;
        each repeat adds 0.1, capped at 1.0.
        """
        now = _utcnow()
        with self._conn() as conn:
            row = conn.execute(
                "SELECT confidence, examples FROM learned_patterns WHERE field=? AND pattern=?",
                (field, pattern),
            ).fetchone()
            if row is None:
                confidence = LEARNED_PATTERN_INITIAL_CONFIDENCE
                examples = [example]
                conn.execute(
                    """INSERT INTO learned_patterns (field, pattern, confidence, examples, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (field, pattern, confidence, json.dumps(examples), now),
                )
            else:
                confidence = round(min(1.0, row["confidence"] + LEARNED_PATTERN_STEP), 4)
                examples = json.loads(row["examples"])
                if example not in examples:
                    examples.append(example)
                conn.execute(
                    """UPDATE learned_patterns SET confidence=?, examples=?, updated_at=?
                       WHERE field=? AND pattern=?""",
                    (confidence, json.dumps(examples), now, field, pattern),
                )
        return LearnedPattern(field=field, pattern=pattern, confidence=confidence, examples=examples)

    def list_learned_patterns(self, field: Optional[str] = None) -> list[LearnedPattern]:
        query = "SELECT field, pattern, confidence, examples FROM learned_patterns"
        params: tuple = ()
        if field:
            query += " WHERE field = ?"
            params = (field,)
        query += " ORDER BY confidence DESC, field, pattern"
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            LearnedPattern(
                field=r["field"],
                pattern=r["pattern"],
                confidence=r["confidence"],
                examples=json.loads(r["examples"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Match results
    # ------------------------------------------------------------------

    def replace_match_result(self, result: MatchResult) -> None:
        """Store a project's MatchResult, replacing any previous one."""
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO match_results (project_id, payload, computed_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(project_id) DO UPDATE SET
                       payload     = excluded.payload,
                       computed_at = excluded.computed_at""",
                (result.project_id, result.model_dump_json(), _utcnow()),
            )
        self.log_audit(
            result.project_id, "matched",
            detail={"invoices": len(result.invoice_ids), "unmatched": len(result.unmatched)},
        )

    def get_match_result(self, project_id: str) -> Optional[MatchResult]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT payload FROM match_results WHERE project_id=?", (project_id,)
            ).fetchone()
        return MatchResult.model_validate_json(row["payload"]) if row else None

    # ------------------------------------------------------------------
    # Audit / stats
    # ------------------------------------------------------------------

    def log_audit(
        self,
        entity_id: str,
        action: str,
        actor: str = "system",
        detail: Optional[dict] = None,
    ) -> None:
        """Append one entry to the audit log."""
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO audit_log (entity_id, timestamp, action, actor, detail)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    entity_id,
                    _utcnow(),
                    action,
                    actor,
                    json.dumps(detail) if detail is not None else None,
                ),
            )

    def get_audit_log(self, entity_id: str) -> list[dict]:
        """Return all audit entries for one entity, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, timestamp, action, actor, detail
                   FROM audit_log WHERE entity_id = ?
                   ORDER BY timestamp ASC, id ASC""",
                (entity_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_stats(self) -> dict:
        """Return aggregate counts by review status."""
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*)  AS total,
                    SUM(CASE WHEN status = 'unreviewed' THEN 1 ELSE 0 END) AS unreviewed,
                    SUM(CASE WHEN status = 'approved'   THEN 1 ELSE 0 END) AS approved,
                    SUM(CASE WHEN status = 'rejected'   THEN 1 ELSE 0 END) AS rejected,
                    SUM(needs_review) AS needs_review,
                    (SELECT COUNT(*) FROM training_examples) AS training_examples
                FROM invoices
                """
            ).fetchone()
        return {k: (row[k] or 0) for k in row.keys()} if row else {}
