"""OpenAI extractor: file upload + Responses API with reasoning effort.

The uploaded file is deleted in ``finally`` whatever happens to the
request. SDK retries are disabled; the orchestrator owns retry policy.
"""

import logging

import openai

from config import settings
from extractors import Extractor, Pricing
from models import ErrorKind, ExtractionError, ExtractionRequest, Usage
from prompts import build_prompt
from schema_spec import SchemaRegistry, SchemaSpec

logger = logging.getLogger(__name__)


def default_pricing() -> Pricing:
    return Pricing(
        input_per_million=settings.OPENAI_INPUT_COST,
        cached_input_per_million=settings.OPENAI_CACHED_INPUT_COST,
        output_per_million=settings.OPENAI_OUTPUT_COST,
        reasoning_billed_as_output=settings.OPENAI_REASONING_BILLED_AS_OUTPUT,
    )


class OpenAIFileExtractor(Extractor):
    def __init__(
        self,
        schemas: SchemaRegistry,
        client: openai.AsyncOpenAI | None = None,
        model: str | None = None,
        name: str = "openai",
        pricing: Pricing | None = None,
        max_content_bytes: int | None = None,
    ):
        super().__init__(name, schemas, pricing=pricing or default_pricing(),
                         max_content_bytes=max_content_bytes)
        self.model = model or settings.OPENAI_MODEL
        self._client = client or openai.AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            max_retries=0,
            timeout=settings.EXTRACT_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.close()

    async def _extract(self, request: ExtractionRequest, spec: SchemaSpec) -> tuple[str, Usage] | ExtractionError:
        try:
            uploaded = await self._client.files.create(
                file=(request.filename or request.document_id, request.content, request.media_type),
                purpose="user_data",
            )
        except openai.OpenAIError as e:
            return self._classify(e)
        logger.info("Uploaded %s as file %s", request.document_id, uploaded.id)

        try:
            response = await self._client.responses.create(
                model=self.model,
                reasoning={"effort": request.effort.value},
                input=[{
                    "role": "user",
                    "content": [
                        {"type": "input_file", "file_id": uploaded.id},
                        {"type": "input_text", "text": build_prompt(spec, request.effort)},
                    ],
                }],
                text={"format": {"type": "json_object"}},
            )
        except openai.OpenAIError as e:
            return self._classify(e)
        finally:
            await self._delete_file(uploaded.id)

        return response.output_text or "", _usage(response.usage)

    async def _delete_file(self, file_id: str) -> None:
        try:
            await self._client.files.delete(file_id)
        except openai.OpenAIError as e:
            logger.warning("Failed to delete file %s: %s", file_id, e)
            return
        logger.info("Deleted file %s", file_id)

    def _classify(self, e: openai.OpenAIError) -> ExtractionError:
        status = getattr(e, "status_code", None)
        if isinstance(e, openai.RateLimitError):
            return self.error(ErrorKind.RATE_LIMITED, str(e), status_code=status,
                              retry_after=_retry_after(e))
        if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError)):
            return self.error(ErrorKind.FATAL, str(e), status_code=status)
        if isinstance(e, (openai.APIConnectionError, openai.InternalServerError)):
            return self.error(ErrorKind.TRANSIENT, str(e), status_code=status)
        if isinstance(e, openai.APIStatusError) and e.status_code >= 500:
            return self.error(ErrorKind.TRANSIENT, str(e), status_code=status)
        return self.error(ErrorKind.SCHEMA_MISMATCH, str(e), status_code=status)


def _usage(raw) -> Usage:
    """Normalize Responses API usage: visible output excludes reasoning tokens."""
    if raw is None:
        return Usage()
    input_details = getattr(raw, "input_tokens_details", None)
    output_details = getattr(raw, "output_tokens_details", None)
    cached = getattr(input_details, "cached_tokens", 0) or 0
    reasoning = getattr(output_details, "reasoning_tokens", 0) or 0
    return Usage(
        input_tokens=raw.input_tokens,
        cached_input_tokens=cached,
        output_tokens=max(raw.output_tokens - reasoning, 0),
        reasoning_tokens=reasoning,
    )


def _retry_after(e: openai.APIStatusError) -> float | None:
    value = e.response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
