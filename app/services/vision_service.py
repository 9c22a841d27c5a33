from __future__ import annotations

import base64
import json
import os
from typing import Any

import httpx
import structlog

from app.domain.models import AI_FIELD_NAMES, ClassificationResult
from app.services.photo_storage_service import PhotoStorage

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-sonnet-4"
REQUEST_TIMEOUT_SECONDS = 60.0
MAX_OUTPUT_TOKENS = 500

ANALYSIS_PROMPT = """You are assessing a photo of a damaged parcel for a delivery carrier's claims team.
Inspect the packaging and any visible contents, then classify the damage using this rubric.

severity - how badly the parcel is damaged:
- "minor": cosmetic only (scuffs, small dents, light creasing); packaging still protects the contents
- "moderate": packaging is compromised (deep dents, partial tears, damp patches) but contents appear intact
- "severe": packaging has failed (crushed, torn open, soaked, punctured through) or contents are visibly damaged

damage_type - the dominant kind of damage, for example "crushed", "wet", "torn", "punctured", "dented" or "opened"

value_impact - the likely effect on the value of the contents:
- "low": contents almost certainly unaffected
- "medium": contents may need inspection or repackaging
- "high": contents likely damaged
- "total_loss": contents destroyed or unusable

liability - the most likely responsible party:
- "carrier": damage consistent with handling or transport (impact, crushing, exposure to weather in transit)
- "sender": inadequate packaging for the contents (undersized box, no padding, poor sealing)
- "recipient": damage occurred after delivery
- "unknown": the photo does not show enough to decide

Respond ONLY with a single JSON object with exactly these keys: "severity", "damage_type", "value_impact", "liability". Do not add any other text."""


class VisionError(Exception):
    pass


class MissingConfigurationError(VisionError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Vision configuration missing: {key}")
        self.key = key


class ApiError(VisionError):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(f"Vision API error: {message}")
        self.status_code = status_code


class InvalidResponseError(VisionError):
    def __init__(self, message: str = "Invalid response format") -> None:
        super().__init__(f"Vision response error: {message}")


class ImageNotFoundError(VisionError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Image not found at path: {path}")
        self.path = path


def strip_code_fence(content: str) -> str:
    stripped = content.strip()
    if stripped.startswith("```json"):
        stripped = stripped[len("```json") :]
    if stripped.startswith("```"):
        stripped = stripped[len("```") :]
    if stripped.endswith("```"):
        stripped = stripped[: -len("```")]
    return stripped.strip()


def parse_classification_content(content: str) -> ClassificationResult:
    try:
        parsed = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise InvalidResponseError("Response is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise InvalidResponseError("Response is not valid JSON")
    for key in AI_FIELD_NAMES:
        if parsed.get(key) is None:
            raise InvalidResponseError(f"Missing required field: {key}")
    # values stay free-form; the rubric enumerations are advisory
    return ClassificationResult(**{key: str(parsed[key]) for key in AI_FIELD_NAMES})


class VisionClassificationClient:
    def __init__(
        self,
        storage: PhotoStorage,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._api_key = (api_key if api_key is not None else os.getenv("VISION_API_KEY", "")).strip()
        self._base_url = (base_url or os.getenv("VISION_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._model = model or os.getenv("VISION_MODEL") or DEFAULT_MODEL
        if not self._api_key:
            raise MissingConfigurationError("api_key")
        self._transport = transport

    @property
    def model(self) -> str:
        return self._model

    def _http_client(self) -> httpx.Client:
        return httpx.Client(
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    def _read_image_as_data_uri(self, photo_path: str) -> str:
        if not self._storage.exists(photo_path):
            raise ImageNotFoundError(photo_path)
        content = self._storage.get(photo_path)
        mime_type = self._storage.mime_type(photo_path)
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"

    def build_request_body(self, data_uri: str) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_uri}},
                    ],
                }
            ],
            "max_tokens": MAX_OUTPUT_TOKENS,
        }

    def analyze(self, photo_path: str) -> ClassificationResult:
        data_uri = self._read_image_as_data_uri(photo_path)
        url = f"{self._base_url}/chat/completions"
        try:
            with self._http_client() as client:
                response = client.post(url, json=self.build_request_body(data_uri))
        except httpx.HTTPError as exc:
            logger.warning("vision_request_failed", photo_path=photo_path, error=str(exc))
            raise ApiError(str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            message = _error_message(response)
            logger.warning(
                "vision_api_error",
                photo_path=photo_path,
                status_code=response.status_code,
                message=message,
            )
            raise ApiError(message, response.status_code)

        result = _parse_response(response)
        logger.info("vision_classified", photo_path=photo_path, severity=result.severity)
        return result


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    body = _json_body(response)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return "Unknown error"


def _parse_response(response: httpx.Response) -> ClassificationResult:
    body = _json_body(response)
    if not body or not isinstance(body, dict):
        raise InvalidResponseError("Empty response")
    content: Any = None
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            content = message.get("content")
    if not content or not isinstance(content, str):
        raise InvalidResponseError("No content in response")
    return parse_classification_content(content)
