"""HTTP client for the remote image-analysis endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..errors import ErrorKind, SubmissionError
from ..frames import CapturedFrame, validate_frame

logger = logging.getLogger(__name__)

_RESULT_KEYS = ("data", "analysis", "results")


@dataclass
class AnalysisResult:
    """Structured analysis payload returned by the service."""

    data: Dict[str, Any]
    status_code: int = 200
    raw: Dict[str, Any] = field(default_factory=dict)


def extract_result(body: Any) -> Dict[str, Any]:
    """Pick the analysis payload out of a response body.

    Accepts `{data: ...}`, `{analysis: ...}`, `{results: ...}` or a flat object.
    """
    if not isinstance(body, dict):
        raise SubmissionError(ErrorKind.EMPTY_RESULT, log_message=f"response body is {type(body).__name__}")

    if body.get("error"):
        detail = _error_detail(body)
        raise SubmissionError(ErrorKind.SERVICE_ERROR, f"Analysis failed: {detail}", log_message=detail)

    for key in _RESULT_KEYS:
        if key in body:
            result = body[key]
            break
    else:
        if "message" in body and len(body) == 1:
            detail = _error_detail(body)
            raise SubmissionError(ErrorKind.SERVICE_ERROR, f"Analysis failed: {detail}", log_message=detail)
        result = body

    if not isinstance(result, dict) or not result:
        raise SubmissionError(ErrorKind.EMPTY_RESULT, log_message="analysis payload empty")
    return result


def _error_detail(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    return "unknown error"


class AnalysisHttpClient:
    """Thin wrapper around the analysis endpoint."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(timeout=self.settings.analysis_timeout_s, transport=transport)

    async def submit(self, frame: Optional[CapturedFrame]) -> AnalysisResult:
        """POST the frame as `{image: <data url>}` and return the parsed analysis."""
        frame = validate_frame(frame, min_payload_chars=self.settings.upload.min_payload_chars)
        url = self.settings.analysis_api_url

        try:
            logger.info("analysis.submit: posting %d byte %s (%s)", frame.size_bytes, frame.mime_type, frame.source.value)
            response = await self._client.post(url, json={"image": frame.data_url})
        except httpx.TimeoutException as e:
            logger.error("analysis.submit: request timeout")
            raise SubmissionError(ErrorKind.NETWORK_FAILURE, log_message="request timeout") from e
        except httpx.HTTPError as e:
            logger.error("analysis.submit: network error - %s", e)
            raise SubmissionError(ErrorKind.NETWORK_FAILURE, log_message=str(e)) from e

        if not response.is_success:
            try:
                detail = _error_detail(response.json())
            except ValueError:
                detail = response.text.strip() or response.reason_phrase
            logger.error("analysis.submit: HTTP %d - %s", response.status_code, detail)
            raise SubmissionError(
                ErrorKind.SERVICE_ERROR,
                f"Analysis failed: {detail}",
                log_message=f"HTTP {response.status_code}: {detail}",
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error("analysis.submit: unparseable response body")
            raise SubmissionError(ErrorKind.RESPONSE_PARSE_FAILURE, log_message=str(e)) from e

        data = extract_result(body)
        logger.info("analysis.submit: received analysis with keys %s", sorted(data)[:10])
        return AnalysisResult(data=data, status_code=response.status_code, raw=body)

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)
