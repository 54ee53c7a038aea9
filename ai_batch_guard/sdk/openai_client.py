"""
OpenAI image generation client.

Generates one variant per call, stores the image and a thumbnail in the
object store, and returns signed URLs for both. Upstream failures are
translated into RetryableError or FatalError for the retry executor.
"""

import asyncio
import base64
import io
import logging
import uuid
from typing import Optional, Sequence

import openai
from openai import AsyncOpenAI
from PIL import Image, UnidentifiedImageError

from ..core.errors import FatalError, RetryableError, StoreUnavailableError
from ..core.orchestrator import GeneratedImage
from ..core.retry import RETRYABLE_STATUS_CODES
from ..logging import log_debug, log_warning
from ..storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = 128
STORE_ATTEMPTS = 2

# Models that accept response_format; newer models always return base64.
_RESPONSE_FORMAT_MODELS = frozenset({"dall-e-2", "dall-e-3"})


def make_thumbnail(image_bytes: bytes, size: int = THUMBNAIL_SIZE) -> bytes:
    """Downscale an image to fit in a ``size`` square, as PNG.

    Raises:
        FatalError: If the bytes are not a readable image
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        converted = image.convert("RGBA") if image.mode not in {"RGB", "RGBA"} else image
        converted.thumbnail((size, size))
        output = io.BytesIO()
        converted.save(output, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise FatalError(f"Upstream returned an unreadable image: {e}") from e
    return output.getvalue()


def build_prompt(prompt: str, reference_urls: Sequence[str]) -> str:
    if not reference_urls:
        return prompt
    lines = [prompt, "", "Reference images:"]
    lines.extend(f"- {url}" for url in reference_urls)
    return "\n".join(lines)


def translate_error(exc: openai.OpenAIError) -> Exception:
    """Map an OpenAI SDK error onto the retryable/fatal taxonomy."""
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        status = getattr(exc, "status_code", None)
        return RetryableError(f"OpenAI transient error: {exc}", status_code=status)
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code in RETRYABLE_STATUS_CODES:
            return RetryableError(f"OpenAI transient error: {exc}", status_code=exc.status_code)
        return FatalError(f"OpenAI rejected the request: {exc}", status_code=exc.status_code)
    return FatalError(f"OpenAI error: {exc}")


class OpenAIImageGenerator:
    """Image generator backed by the OpenAI Images API."""

    def __init__(
        self,
        store: ObjectStore,
        model: str = "gpt-image-1",
        size: str = "1024x1024",
        url_ttl_seconds: float = 7 * 24 * 60 * 60,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the generator.

        Args:
            store: Object store that receives images and thumbnails
            model: OpenAI image model name (required)
            size: Requested image size
            url_ttl_seconds: Lifetime of the returned signed URLs
            client: OpenAI client (defaults to AsyncOpenAI() from the environment)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.store = store
        self.model = model
        self.size = size
        self.url_ttl_seconds = url_ttl_seconds
        self.client = client or AsyncOpenAI()

    async def generate(self, prompt: str, reference_urls: Sequence[str], variant_index: int) -> GeneratedImage:
        """Generate and store one variant.

        Returns:
            GeneratedImage with signed URLs for the image and its thumbnail

        Raises:
            RetryableError: Rate limited, 5xx, timeout, or connection failure
            FatalError: Rejected request, unusable response, or the image could not be stored
        """
        params = {
            "model": self.model,
            "prompt": build_prompt(prompt, reference_urls),
            "size": self.size,
            "n": 1,
        }
        if self.model in _RESPONSE_FORMAT_MODELS:
            params["response_format"] = "b64_json"

        try:
            response = await self.client.images.generate(**params)
        except openai.OpenAIError as e:
            raise translate_error(e) from e

        if not response.data or not response.data[0].b64_json:
            raise FatalError("OpenAI response missing image data")
        image_bytes = base64.b64decode(response.data[0].b64_json)
        thumbnail_bytes = make_thumbnail(image_bytes)

        for attempt in range(1, STORE_ATTEMPTS + 1):
            try:
                return await asyncio.to_thread(self._store_variant, image_bytes, thumbnail_bytes, variant_index)
            except StoreUnavailableError as e:
                log_warning(logger=logger, event="Variant store failed", variant=variant_index,
                            attempt=attempt, error=str(e))
                error = e
        # Never retryable: a retry would pay for the generation again.
        raise FatalError(f"Generated image could not be stored: {error}") from error

    def _store_variant(self, image_bytes: bytes, thumbnail_bytes: bytes, variant_index: int) -> GeneratedImage:
        prefix = f"images/{uuid.uuid4().hex}"
        image_key = f"{prefix}/variant_{variant_index}.png"
        thumbnail_key = f"{prefix}/variant_{variant_index}_thumb.png"
        self.store.put_bytes(image_key, image_bytes, "image/png")
        self.store.put_bytes(thumbnail_key, thumbnail_bytes, "image/png")
        log_debug(logger=logger, event="Variant stored", key=image_key, variant=variant_index)

        return GeneratedImage(
            image_location=self.store.signed_url(image_key, self.url_ttl_seconds),
            thumbnail_location=self.store.signed_url(thumbnail_key, self.url_ttl_seconds),
        )
