"""
Parsing helpers shared by all providers: image payloads in, structured content out.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from vibe_gen.errors import ErrorKind, ProviderError


DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,", re.IGNORECASE)
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")

# Leading base64 characters of common image formats
BASE64_SIGNATURES = [
    ("/9j/", "image/jpeg"),
    ("iVBOR", "image/png"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
]


@dataclass
class ImagePayload:
    """A base64 image with its media type."""
    media_type: str
    data: str

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


def parse_image_payload(image: str) -> ImagePayload:
    """
    Split an image string into media type and raw base64 data.

    Accepts either a data URL or bare base64. Bare data is sniffed by its
    leading bytes and defaults to PNG.

    Args:
        image: Data URL or base64 string.

    Returns:
        ImagePayload with the prefix stripped.
    """
    image = image.strip()
    match = DATA_URL_PATTERN.match(image)
    if match:
        media_type = match.group(1).lower()
        if media_type == "image/jpg":
            media_type = "image/jpeg"
        return ImagePayload(media_type=media_type, data=image[match.end():])

    for prefix, media_type in BASE64_SIGNATURES:
        if image.startswith(prefix):
            return ImagePayload(media_type=media_type, data=image)
    return ImagePayload(media_type="image/png", data=image)


class ResponseParser:
    """Parses LLM responses to extract HTML or JSON content."""

    @staticmethod
    def strip_code_fences(response_text: str, language: str) -> str:
        """Return the body of the first fenced block, or the text unchanged."""
        fence = f"```{language}"
        if fence in response_text:
            parts = response_text.split(fence)
            if len(parts) > 1:
                return parts[1].split("```")[0].strip()
        elif "```" in response_text:
            parts = response_text.split("```")
            if len(parts) >= 3:
                return parts[1].strip()
        return response_text.strip()

    @staticmethod
    def extract_html(response_text: str) -> str:
        """
        Extract HTML content from LLM response.

        Args:
            response_text: Raw LLM response.

        Returns:
            Extracted HTML content.

        Raises:
            ProviderError: If the response holds no markup at all.
        """
        html = ResponseParser.strip_code_fences(response_text, "html")

        # Drop any prose the model put before the document
        lowered = html.lower()
        for marker in ("<!doctype", "<html"):
            start = lowered.find(marker)
            if start > 0:
                html = html[start:]
                break

        if "<" not in html:
            raise ProviderError(ErrorKind.MALFORMED_RESPONSE, "Response contains no HTML")
        return html

    @staticmethod
    def extract_json(response_text: str, strict: bool = False) -> Any:
        """
        Extract a JSON value from LLM response.

        Args:
            response_text: Raw LLM response.
            strict: Require the whole response to be JSON.

        Returns:
            Decoded JSON value.

        Raises:
            ProviderError: If no JSON can be decoded.
        """
        if strict:
            try:
                return json.loads(response_text)
            except json.JSONDecodeError as e:
                raise ProviderError(ErrorKind.MALFORMED_RESPONSE, f"Invalid JSON response: {e}") from e

        text = ResponseParser.strip_code_fences(response_text, "json")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        for pattern in (JSON_OBJECT_PATTERN, JSON_ARRAY_PATTERN):
            match = pattern.search(text)
            if not match:
                continue
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue

        raise ProviderError(ErrorKind.MALFORMED_RESPONSE, "No JSON found in response")
