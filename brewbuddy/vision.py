"""
Reads coffee bag photos with Gemini and turns the answer into coffee fields.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Protocol

from google import genai
from google.genai import types

from brewbuddy.sanitize import sanitize_coffee_data, to_iso_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
QUERY_RESPONSE_MAX_OUTPUT_TOKENS = 1024
NOT_COFFEE_SENTINEL = "NOT_COFFEE"

SUPPORTED_MEDIA_TYPES = (
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
)

COFFEE_BAG_PROMPT = f"""Analyze this coffee bag and extract the following information as JSON:
{{
  "name": "coffee name or farm name",
  "origin": "country and region",
  "process": "processing method (washed, natural, honey, etc)",
  "cultivar": "variety/cultivar",
  "altitude": "altitude in masl",
  "roaster": "roaster name",
  "tastingNotes": "tasting notes"
}}

Only return valid JSON, no other text.
If the image does not show a coffee bag or coffee packaging, answer with exactly {NOT_COFFEE_SENTINEL}."""

FIELD_DEFAULTS = {
    "name": "Unknown",
    "origin": "Unknown",
    "process": "unknown",
    "cultivar": "Unknown",
    "altitude": "1500",
    "roaster": "Unknown",
    "tastingNotes": "No notes",
}

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class VisionServiceError(Exception):
    """The vision call failed or answered in an unexpected shape."""


class GeminiInvalidResponseException(VisionServiceError):
    pass


class NotCoffeeImageError(Exception):
    """The model says the picture is not a coffee bag."""


class VisionClient(Protocol):
    def call_predict_with_image(
        self, prompt: str, image_bytes: bytes, mime_type: str
    ) -> str:
        ...


class GeminiVisionClient:
    def __init__(self, api_key: Optional[str], model: str = DEFAULT_MODEL):
        self.api_key = api_key
        self.model = model

    def call_predict_with_image(
        self, prompt: str, image_bytes: bytes, mime_type: str
    ) -> str:
        """Calls Gemini with a prompt and an image."""
        if not self.api_key:
            raise VisionServiceError("GEMINI_API_KEY is not configured")

        client = genai.Client(api_key=self.api_key)
        try:
            response = client.models.generate_content(
                model=self.model,
                contents=[
                    prompt,
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                ],
                config=types.GenerateContentConfig(
                    temperature=0, max_output_tokens=QUERY_RESPONSE_MAX_OUTPUT_TOKENS
                ),
            )
        except Exception as exc:
            raise VisionServiceError(f"Gemini request failed: {exc}") from exc
        if not response.text:
            raise GeminiInvalidResponseException("Empty response from Gemini")
        return response.text


def parse_coffee_fields(answer: str) -> dict:
    if answer.strip().upper().startswith(NOT_COFFEE_SENTINEL):
        raise NotCoffeeImageError()

    match = _JSON_OBJECT_RE.search(answer)
    if not match:
        raise GeminiInvalidResponseException("Could not parse coffee data")
    try:
        fields = json.loads(match.group(0))
    except ValueError as exc:
        raise GeminiInvalidResponseException("Could not parse coffee data") from exc
    if not isinstance(fields, dict):
        raise GeminiInvalidResponseException("Could not parse coffee data")

    coffee = {key: fields.get(key) or default for key, default in FIELD_DEFAULTS.items()}
    coffee["addedDate"] = to_iso_timestamp(datetime.now(timezone.utc))
    return sanitize_coffee_data(coffee)


def analyze_coffee_image(
    client: VisionClient, image_bytes: bytes, mime_type: str
) -> dict:
    """Extract coffee fields from a photo of a coffee bag.

    Raises:
        NotCoffeeImageError: the model rejected the picture.
        VisionServiceError: the call failed or the answer was unusable.
    """
    answer = client.call_predict_with_image(COFFEE_BAG_PROMPT, image_bytes, mime_type)
    logger.info("Vision answer received (%d chars)", len(answer))
    return parse_coffee_fields(answer)
