"""Extractor for a self-hosted HTTP inference service.

Protocol: upload the document (POST /files), run extraction against the
uploaded handle (POST /extract), then delete the handle (DELETE /files/{id})
on every exit path. Retries are the orchestrator's job; this adapter only
classifies failures.
"""

import logging

import httpx

from config import settings
from extractors import Extractor, Pricing
from models import ErrorKind, ExtractionError, ExtractionRequest, Usage
from prompts import build_prompt
from schema_spec import SchemaRegistry, SchemaSpec

logger = logging.getLogger(__name__)


class InferenceServiceExtractor(Extractor):
    """HTTP client for the inference service, speaking the extractor contract."""

    def __init__(
        self,
        schemas: SchemaRegistry,
        base_url: str | None = None,
        name: str = "inference",
        timeout: float | None = None,
        connect_timeout: float | None = None,
        pricing: Pricing | None = None,
        max_content_bytes: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(name, schemas, pricing=pricing, max_content_bytes=max_content_bytes)
        self._base_url = (base_url or settings.INFERENCE_SERVICE_URL).rstrip("/")

        read_timeout = timeout if timeout is not None else settings.EXTRACT_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.INFERENCE_CONNECT_TIMEOUT

        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=60.0,
                pool=30.0,
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _extract(self, request: ExtractionRequest, spec: SchemaSpec) -> tuple[str, Usage] | ExtractionError:
        uploaded = await self._send(
            "POST", "/files",
            files={"file": (request.filename or request.document_id, request.content, request.media_type)},
        )
        if isinstance(uploaded, ExtractionError):
            return uploaded
        file_id = uploaded.get("id")
        if not file_id:
            return self.error(ErrorKind.SCHEMA_MISMATCH, "Upload response carried no file id")

        try:
            data = await self._send(
                "POST", "/extract",
                json={
                    "file_id": file_id,
                    "prompt": build_prompt(spec, request.effort),
                    "effort": request.effort.value,
                },
            )
        finally:
            await self._delete_file(file_id)

        if isinstance(data, ExtractionError):
            return data
        if not isinstance(data.get("text"), str):
            return self.error(ErrorKind.SCHEMA_MISMATCH, "Extraction response carried no text")

        raw_usage = data.get("usage") or {}
        usage = Usage(
            input_tokens=raw_usage.get("input_tokens", 0),
            output_tokens=raw_usage.get("output_tokens", 0),
            reasoning_tokens=raw_usage.get("reasoning_tokens", 0),
        )
        return data["text"], usage

    async def _send(self, method: str, url: str, **kwargs) -> dict | ExtractionError:
        """Send a single request and classify any failure."""
        try:
            resp = await self._client.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("Inference service connection failed: %s", e)
            return self.error(ErrorKind.TRANSIENT, f"Cannot connect to inference service: {e}")
        except httpx.TimeoutException as e:
            logger.warning("Inference service timeout: %s", e)
            return self.error(ErrorKind.TRANSIENT, f"Inference service timeout: {e}")
        except httpx.HTTPError as e:
            logger.error("Inference service HTTP error: %s", e)
            return self.error(ErrorKind.TRANSIENT, f"Inference service HTTP error: {e}")

        if resp.status_code == 200:
            try:
                body = resp.json()
            except ValueError:
                return self.error(ErrorKind.SCHEMA_MISMATCH, "Inference service returned invalid JSON")
            if not isinstance(body, dict):
                return self.error(ErrorKind.SCHEMA_MISMATCH, "Inference service returned a non-object body")
            return body

        return self._classify(resp)

    def _classify(self, resp: httpx.Response) -> ExtractionError:
        detail = _detail(resp)
        status = resp.status_code
        if status == 429:
            logger.warning("Inference service rate limited: %s", detail)
            return self.error(ErrorKind.RATE_LIMITED, detail, status_code=status,
                              retry_after=_retry_after(resp))
        if status in (401, 403):
            logger.error("Inference service rejected credentials (%d): %s", status, detail)
            return self.error(ErrorKind.FATAL, detail, status_code=status)
        if status >= 500:
            logger.warning("Inference service error %d: %s", status, detail)
            return self.error(ErrorKind.TRANSIENT, detail, status_code=status)
        logger.error("Inference service rejected request %d: %s", status, detail)
        return self.error(ErrorKind.SCHEMA_MISMATCH, detail, status_code=status)

    async def _delete_file(self, file_id: str) -> None:
        try:
            resp = await self._client.delete(f"/files/{file_id}")
        except httpx.HTTPError as e:
            logger.warning("Failed to delete uploaded file %s: %s", file_id, e)
            return
        if resp.status_code not in (200, 204, 404):
            logger.warning("Failed to delete uploaded file %s: HTTP %d", file_id, resp.status_code)

    async def health(self) -> dict:
        """Check inference service health. Returns health dict, never raises."""
        try:
            resp = await self._client.get("/health", timeout=10.0)
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Inference service health check failed: %s", e)
            return {"status": "unreachable", "error": str(e)}


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail", f"HTTP {resp.status_code}"))
    return f"HTTP {resp.status_code}"


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
