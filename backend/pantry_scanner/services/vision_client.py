"""
Vision extraction capability.

The pipeline only needs "submit image + prompt, receive text". This module
wraps that call (OpenAI vision chat completions), turns the returned text
into a validated `ExtractedReceipt`, and classifies failures so the
orchestrator can decide between a warning and a fatal result.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import base64
import json
import logging
import re

import openai
from pydantic import ValidationError

from pantry_scanner.schemas.receipt import ExtractedReceipt, ReceiptItem
from pantry_scanner.services.results import CallResult

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Base class for extraction failures raised by this package."""
    error_type = "generic"


class InvalidResponseError(ExtractionError):
    """The model answered, but no JSON object could be parsed from the text."""
    error_type = "invalid_response"


@dataclass
class VisionResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class VisionExtractor:
    """Interface for anything that can read an image with a prompt."""

    async def complete(
        self,
        image: bytes,
        media_type: str,
        prompt: str,
        max_tokens: Optional[int] = None,
    ) -> VisionResponse:
        raise NotImplementedError


class OpenAIVisionExtractor(VisionExtractor):
    """OpenAI chat-completions vision call. Retries are left to the caller."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        max_tokens: int = 4096,
        temperature: float = 0.1,
        timeout: float = 120.0,
    ):
        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(
        self,
        image: bytes,
        media_type: str,
        prompt: str,
        max_tokens: Optional[int] = None,
    ) -> VisionResponse:
        image_base64 = base64.standard_b64encode(image).decode("utf-8")
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{image_base64}"}
                        },
                        {"type": "text", "text": prompt},
                    ]
                }
            ],
            max_completion_tokens=max_tokens or self.max_tokens,
            temperature=self.temperature,
        )
        usage = response.usage
        return VisionResponse(
            text=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ============== RESPONSE PARSING ==============

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def detect_media_type(image_content: bytes) -> str:
    if image_content[:8] == b'\x89PNG\r\n\x1a\n':
        return "image/png"
    if image_content[:4] == b'RIFF' and image_content[8:12] == b'WEBP':
        return "image/webp"
    return "image/jpeg"  # Default to JPEG


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model text, with or without a fenced code block."""
    if not text or not text.strip():
        raise InvalidResponseError("Empty response from vision model")

    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    logger.error(f"Failed to parse vision response as JSON: {text[:200]!r}")
    raise InvalidResponseError("Invalid JSON response from vision model")


def parse_items(raw_items: Any) -> Tuple[List[ReceiptItem], List[str]]:
    """Validate raw item dicts one by one. Malformed entries are dropped with a reason."""
    items: List[ReceiptItem] = []
    rejected: List[str] = []
    if not isinstance(raw_items, list):
        return items, rejected

    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            rejected.append(f"Item {index + 1}: not an object")
            continue
        try:
            items.append(ReceiptItem.model_validate(raw))
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            label = raw.get("name") or raw.get("source_text") or f"item {index + 1}"
            rejected.append(f"Dropped malformed item '{label}' (invalid: {fields})")
            logger.warning(f"Rejected extracted item {raw!r}: {fields}")
    return items, rejected


def parse_extracted_receipt(data: Dict[str, Any]) -> ExtractedReceipt:
    """Validate a parsed model response against the ExtractedReceipt shape."""
    items, rejected = parse_items(data.get("items", []))
    header = {k: v for k, v in data.items() if k != "items"}
    try:
        receipt = ExtractedReceipt.model_validate(header)
    except ValidationError as e:
        bad_fields = {err["loc"][0] for err in e.errors() if err["loc"]}
        logger.warning(f"Dropping invalid receipt fields: {sorted(str(f) for f in bad_fields)}")
        receipt = ExtractedReceipt.model_validate(
            {k: v for k, v in header.items() if k not in bad_fields}
        )
    receipt.items = items
    receipt.quality_warnings.extend(rejected)
    return receipt


# ============== ERROR CLASSIFICATION ==============

def categorize_extraction_error(error: Exception) -> Tuple[str, str]:
    """Map an exception from an extraction call to (error_type, user message)."""
    if isinstance(error, InvalidResponseError):
        return "invalid_response", "Could not read the receipt: the vision model returned an invalid response."

    status = getattr(error, "status_code", None)
    if status in (401, 403):
        return "auth", "Authentication error with the vision API. Please check API key configuration."
    if status == 429:
        return "rate_limit", "Rate limit exceeded. Please try again in a moment."
    if status == 400:
        return "invalid_image", "Invalid image format. The vision model could not process this image."
    if isinstance(error, openai.APITimeoutError):
        return "generic", "The vision model timed out while reading the receipt."
    return "generic", f"Vision extraction error: {error}"


async def request_json(
    extractor: VisionExtractor,
    image: bytes,
    media_type: str,
    prompt: str,
    max_tokens: Optional[int] = None,
) -> CallResult[Dict[str, Any]]:
    """One extraction call as a tagged result; never raises."""
    try:
        response = await extractor.complete(image, media_type, prompt, max_tokens=max_tokens)
    except Exception as e:
        error_type, message = categorize_extraction_error(e)
        logger.warning(f"Vision call failed ({error_type}): {e}")
        return CallResult.failure(message, error_type)

    try:
        data = parse_json_response(response.text)
    except InvalidResponseError as e:
        error_type, message = categorize_extraction_error(e)
        return CallResult.failure(message, error_type, response.input_tokens, response.output_tokens)

    return CallResult.success(data, response.input_tokens, response.output_tokens)
