"""Uniform extractor contract shared by every provider adapter.

``extract`` never raises for provider trouble: it returns an
ExtractionResult or a classified ExtractionError. Adapters only implement
``_extract`` (one provider round trip returning raw text and usage); the
base class owns request checks, JSON parsing, shape checks and costing.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod

from pydantic import BaseModel

from config import settings
from models import ErrorKind, ExtractionError, ExtractionRequest, ExtractionResult, Usage
from schema_spec import SchemaRegistry, SchemaSpec

logger = logging.getLogger(__name__)


class Pricing(BaseModel):
    """Provider prices in USD per million tokens."""

    input_per_million: float = 0.0
    cached_input_per_million: float = 0.0
    output_per_million: float = 0.0
    reasoning_billed_as_output: bool = True

    def cost(self, usage: Usage) -> float:
        uncached = max(usage.input_tokens - usage.cached_input_tokens, 0)
        billed_output = usage.output_tokens
        if self.reasoning_billed_as_output:
            billed_output += usage.reasoning_tokens
        total = (
            uncached * self.input_per_million
            + usage.cached_input_tokens * self.cached_input_per_million
            + billed_output * self.output_per_million
        ) / 1_000_000
        return round(total, 6)


class Extractor(ABC):
    """One external provider behind the extract(request) contract."""

    def __init__(
        self,
        name: str,
        schemas: SchemaRegistry,
        pricing: Pricing | None = None,
        max_content_bytes: int | None = None,
    ):
        self.name = name
        self._schemas = schemas
        self.pricing = pricing or Pricing()
        self.max_content_bytes = max_content_bytes if max_content_bytes is not None else settings.MAX_CONTENT_BYTES

    async def extract(self, request: ExtractionRequest) -> ExtractionResult | ExtractionError:
        start = time.monotonic()

        spec = self._schemas.get(request.schema_id)
        if spec is None:
            return self.error(ErrorKind.FATAL, f"Schema {request.schema_id!r} is not registered")
        if not request.content:
            return self.error(ErrorKind.SCHEMA_MISMATCH, "Document content is empty")
        if len(request.content) > self.max_content_bytes:
            return self.error(
                ErrorKind.SCHEMA_MISMATCH,
                f"Document is {len(request.content)} bytes, limit is {self.max_content_bytes}",
            )

        logger.info(
            "%s extracting %s: %d bytes, effort=%s",
            self.name, request.document_id, len(request.content), request.effort.value,
        )
        outcome = await self._extract(request, spec)
        if isinstance(outcome, ExtractionError):
            logger.warning("%s failed on %s: %s (%s)", self.name, request.document_id,
                           outcome.kind.value, outcome.message)
            return outcome

        raw_text, usage = outcome
        # billed even when the response is rejected below
        usage = usage.model_copy(update={"cost_usd": self.pricing.cost(usage)})
        tree = try_parse_json(raw_text)
        if tree is None:
            return self.error(ErrorKind.SCHEMA_MISMATCH, "Provider response is not a JSON object", usage=usage)

        missing = [key for key in spec.required_top_level_keys if key not in tree]
        if missing:
            return self.error(
                ErrorKind.SCHEMA_MISMATCH,
                f"Response is missing required top-level keys: {', '.join(missing)}",
                usage=usage,
            )

        elapsed = time.monotonic() - start
        logger.info(
            "%s extracted %s in %.1fs: %d tokens, $%.6f",
            self.name, request.document_id, elapsed, usage.total_tokens, usage.cost_usd,
        )
        return ExtractionResult(
            extractor=self.name,
            tree=tree,
            usage=usage,
            duration_seconds=round(elapsed, 3),
        )

    @abstractmethod
    async def _extract(
        self, request: ExtractionRequest, spec: SchemaSpec
    ) -> tuple[str, Usage] | ExtractionError:
        """One provider round trip: raw response text plus token usage.

        Must release any provider-side resource it allocates on every path.
        """

    def error(self, kind: ErrorKind, message: str, **extra) -> ExtractionError:
        return ExtractionError(kind=kind, extractor=self.name, message=message, **extra)

    async def aclose(self) -> None:
        """Release the adapter's client. Default: nothing to release."""


def try_parse_json(raw: str) -> dict | None:
    """Try to extract a JSON object from the model output.

    Handles: direct JSON, markdown fences, preamble text, and
    <think>...</think> reasoning blocks.
    """
    if not raw:
        return None

    cleaned = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()

    # Try direct parse first
    try:
        result = json.loads(cleaned)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    # Try to find JSON block in markdown code fences
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", cleaned, re.DOTALL)
    if match:
        try:
            result = json.loads(match.group(1).strip())
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass

    # Try the outermost { ... } span (trees are nested)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            result = json.loads(cleaned[start:end + 1])
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass

    logger.warning("Could not parse JSON from model response (%d chars)", len(cleaned))
    return None
