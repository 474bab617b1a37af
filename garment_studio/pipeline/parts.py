"""
Multi-part Response Scanning

The generative edit service answers with a list of parts, each carrying
inline image data, text, or neither. These helpers turn the raw JSON into
tagged values and pick the first image, independent of any transport.
"""

from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel

NO_IMAGE_MESSAGE = "Edit service returned no image"


class ImagePart(BaseModel):
    kind: Literal["image"] = "image"
    data: str  # base64 payload as sent by the service
    mime_type: str = "image/png"


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class EmptyPart(BaseModel):
    kind: Literal["empty"] = "empty"


ContentPart = Union[ImagePart, TextPart, EmptyPart]


class PartsScan(BaseModel):
    """First image part, or the joined text explaining why there is none."""
    image: Optional[ImagePart] = None
    message: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.image is not None


def parse_part(raw: Dict[str, Any]) -> ContentPart:
    """Convert one raw response part (camelCase or snake_case keys)."""
    if not isinstance(raw, dict):
        return EmptyPart()
    inline = raw.get("inlineData") or raw.get("inline_data")
    if isinstance(inline, dict) and isinstance(inline.get("data"), str) and inline["data"]:
        mime_type = inline.get("mimeType") or inline.get("mime_type")
        if not isinstance(mime_type, str) or not mime_type:
            mime_type = "image/png"
        return ImagePart(data=inline["data"], mime_type=mime_type)
    text = raw.get("text")
    if isinstance(text, str) and text:
        return TextPart(text=text)
    return EmptyPart()


def extract_parts(payload: Dict[str, Any]) -> List[ContentPart]:
    """Parts of the first candidate in a generateContent response."""
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content")
    if not isinstance(content, dict):
        return []
    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [parse_part(part) for part in parts]


def scan_parts(parts: Sequence[ContentPart]) -> PartsScan:
    for part in parts:
        if isinstance(part, ImagePart):
            return PartsScan(image=part)
    text = "\n".join(part.text for part in parts if isinstance(part, TextPart))
    return PartsScan(message=text or NO_IMAGE_MESSAGE)
