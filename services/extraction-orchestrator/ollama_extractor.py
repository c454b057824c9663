"""Ollama extractor: sends already-resolved document text to a local chat model."""

import logging

import httpx
import ollama

from config import settings
from extractors import Extractor, Pricing
from models import ErrorKind, ExtractionError, ExtractionRequest, Usage
from prompts import build_prompt
from schema_spec import SchemaRegistry, SchemaSpec

logger = logging.getLogger(__name__)


class OllamaExtractor(Extractor):
    """Text-only: binary content (PDF bytes) is rejected as a schema mismatch
    so the chain falls back to an extractor that accepts files."""

    def __init__(
        self,
        schemas: SchemaRegistry,
        client: ollama.AsyncClient | None = None,
        model: str | None = None,
        name: str = "ollama",
        pricing: Pricing | None = None,
        max_content_bytes: int | None = None,
    ):
        super().__init__(name, schemas, pricing=pricing, max_content_bytes=max_content_bytes)
        self.model = model or settings.OLLAMA_MODEL
        self._client = client or ollama.AsyncClient(host=settings.OLLAMA_URL)

    async def _extract(self, request: ExtractionRequest, spec: SchemaSpec) -> tuple[str, Usage] | ExtractionError:
        try:
            text = request.content.decode("utf-8")
        except UnicodeDecodeError:
            return self.error(ErrorKind.SCHEMA_MISMATCH, "Ollama extractor needs document text, got binary content")

        try:
            response = await self._client.chat(
                model=self.model,
                messages=[{
                    "role": "user",
                    "content": f"{build_prompt(spec, request.effort)}\n\nDOCUMENT:\n{text}",
                }],
                format="json",
            )
        except ollama.ResponseError as e:
            return self._classify(e)
        except (ConnectionError, httpx.TransportError) as e:
            logger.warning("Ollama unreachable: %s", e)
            return self.error(ErrorKind.TRANSIENT, f"Ollama unreachable: {e}")

        # ollama v0.4+ returns Pydantic ChatResponse, use attribute access
        raw_content = response.message.content or ""
        logger.info("Ollama response for %s: %d chars", request.document_id, len(raw_content))
        usage = Usage(
            input_tokens=response.prompt_eval_count or 0,
            output_tokens=response.eval_count or 0,
        )
        return raw_content, usage

    def _classify(self, e: ollama.ResponseError) -> ExtractionError:
        status = e.status_code
        if status == 429:
            return self.error(ErrorKind.RATE_LIMITED, e.error, status_code=status)
        if status in (401, 403, 404):
            # 404 means the model is not pulled: configuration, not content
            return self.error(ErrorKind.FATAL, e.error, status_code=status)
        if status >= 500:
            return self.error(ErrorKind.TRANSIENT, e.error, status_code=status)
        return self.error(ErrorKind.SCHEMA_MISMATCH, e.error, status_code=status)
