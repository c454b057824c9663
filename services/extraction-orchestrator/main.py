"""FastAPI extraction orchestrator service: one document per request.

Runs the same pipeline as the batch CLI (extractor chain with retry and
fallback, consensus, validation) and returns the document record.
Document content is never logged, only byte counts.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse

from config import settings
from extractors import Extractor
from inference_client import InferenceServiceExtractor
from models import DocumentRecord, Effort, SourceDocument
from pipeline import BatchAborted, ConsensusMode, DocumentPipeline
from providers import build_extractors
from schema_spec import SchemaRegistry, SchemaSpec, load_schema

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_spec: SchemaSpec | None = None
_extractors: list[Extractor] = []
_pipeline: DocumentPipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the schema and build the extractor chain on startup."""
    global _spec, _extractors, _pipeline

    _spec = load_schema(settings.SCHEMA_PATH)
    _extractors = build_extractors(SchemaRegistry([_spec]))
    if not _extractors:
        logger.info("No extractor configured: extraction disabled")
        _pipeline = None
    else:
        _pipeline = DocumentPipeline(_extractors, _spec, mode=ConsensusMode(settings.CONSENSUS_MODE))

    yield

    for extractor in _extractors:
        await extractor.aclose()
    _extractors = []
    _pipeline = None


app = FastAPI(title="Extraction Orchestrator", version="1.0.0", lifespan=lifespan)


@app.post("/api/v1/extract", response_model=DocumentRecord)
async def extract(
    file: UploadFile = File(...),
    effort: Effort = Form(Effort(settings.DEFAULT_EFFORT)),
):
    """Extract, reconcile and validate one uploaded document."""
    if _pipeline is None:
        return JSONResponse(
            status_code=503,
            content={"detail": "Document extraction is not available - no extractor configured"},
        )

    content = await file.read()
    if not content:
        return JSONResponse(
            status_code=400,
            content={"detail": "Empty file uploaded"},
        )

    filename = file.filename or "upload"
    logger.info("Processing extraction: file=%s size=%d bytes effort=%s", filename, len(content), effort.value)

    document = SourceDocument(
        document_id=filename,
        content=content,
        filename=filename,
        media_type=file.content_type or "application/octet-stream",
    )
    try:
        _, record = await _pipeline.process(document, effort)
    except BatchAborted as e:
        return JSONResponse(
            status_code=502,
            content={"detail": str(e), "kind": e.error.kind.value, "extractor": e.error.extractor},
        )
    return record


@app.get("/health")
async def health():
    """Return service status, schema and the configured extractor chain."""
    base = {
        "status": "healthy",
        "extraction_available": _pipeline is not None,
        "schema": {"name": _spec.name, "version": _spec.version} if _spec else None,
        "extractors": [e.name for e in _extractors],
    }

    for extractor in _extractors:
        if isinstance(extractor, InferenceServiceExtractor):
            base[f"{extractor.name}_health"] = await extractor.health()

    return base


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
