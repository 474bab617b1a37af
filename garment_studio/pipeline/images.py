"""
Image Reference Normalization

Services differ in what they accept: the edit service needs inline bytes,
the FAL and Replicate services take a URL (data URLs included).
"""

import base64
import binascii

from garment_studio.core.exceptions import ExternalAPIError
from garment_studio.pipeline.clients import ServiceClient
from garment_studio.pipeline.schemas import ImageRef

DEFAULT_MIME_TYPE = "image/png"


def decode_data_url(url: str) -> ImageRef:
    """Decode a ``data:<mime>;base64,<payload>`` URL into an inline ref."""
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise ValueError("Only base64 data URLs are supported")
    mime_type = header[len("data:"):].split(";", 1)[0] or DEFAULT_MIME_TYPE
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image payload: {e}")
    return ImageRef.inline(data, mime_type)


class ImageNormalizer(ServiceClient):
    """Converts any ImageRef into the representation a service requires."""

    service = "image_fetch"
    display_name = "Image download"

    def _headers(self):
        return {"Accept": "image/*"}

    async def to_inline(self, ref: ImageRef) -> ImageRef:
        if ref.is_inline:
            return ref
        if ref.is_data_url:
            try:
                return decode_data_url(ref.url)
            except ValueError as e:
                raise ExternalAPIError(str(e), service=self.service)

        response = await self._send("GET", ref.url)
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        if not content_type.startswith("image/"):
            content_type = DEFAULT_MIME_TYPE
        if not response.content:
            raise ExternalAPIError("Downloaded image is empty", service=self.service)
        return ImageRef.inline(response.content, content_type)

    @staticmethod
    def to_url(ref: ImageRef) -> str:
        return ref.as_url()
