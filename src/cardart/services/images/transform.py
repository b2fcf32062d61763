"""Image transform pipeline: fetch, decode, resize, re-encode, hash.

One call handles one unique work unit and yields either the complete variant
set plus a BlurHash placeholder, or a typed ImagePipelineError. Decoding and
encoding are CPU-bound and run in worker threads under a shared semaphore.

Aspect policy: EXIF orientation is applied, then every variant is a
center-crop "cover" fit to its exact box (scale until both sides cover the
box, crop the overflow symmetrically). No padding is ever added, so the same
source always yields the same pixels.
"""

import asyncio
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import blurhash
import httpx
import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from cardart.services.exceptions import DecodeError, EncodeError, FetchError

logger = structlog.get_logger(__name__)

SUPPORTED_FORMATS = frozenset({"JPEG", "PNG", "WEBP", "GIF", "BMP", "TIFF", "MPO"})
OUTPUT_FORMAT = "WEBP"
OUTPUT_EXTENSION = "webp"
OUTPUT_CONTENT_TYPE = "image/webp"
HASH_SOURCE_VARIANT = "normal"
HASH_COMPONENTS = (4, 3)
HASH_SAMPLE_SIZE = (32, 32)


@dataclass(frozen=True)
class VariantSpec:
    """Fixed output size and encoder quality of one variant."""

    name: str
    width: int
    height: int
    quality: int


DEFAULT_VARIANTS: tuple[VariantSpec, ...] = (
    VariantSpec("thumbnail", 150, 209, 80),
    VariantSpec("small", 300, 418, 85),
    VariantSpec("normal", 488, 680, 90),
    VariantSpec("large", 672, 936, 95),
)


@dataclass(frozen=True)
class TransformResult:
    """Complete output of one transform.

    Attributes:
        variants: Variant name to encoded bytes
        perceptual_hash: BlurHash of the normal variant
        source_bytes: Size of the downloaded payload
        source_size: (width, height) of the decoded source
    """

    variants: dict[str, bytes]
    perceptual_hash: str
    source_bytes: int
    source_size: tuple[int, int]


def decode_image(data: bytes) -> Image.Image:
    """Decode a raster image and normalize orientation and mode.

    Raises:
        DecodeError: If the payload is empty, unreadable or not a supported format
    """
    if not data:
        raise DecodeError("Empty image payload")
    try:
        image = Image.open(BytesIO(data))
        if image.format not in SUPPORTED_FORMATS:
            raise DecodeError(f"Unsupported image format: {image.format}")
        image.load()
        image = ImageOps.exif_transpose(image)
    except DecodeError:
        raise
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e

    has_alpha = image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )
    target_mode = "RGBA" if has_alpha else "RGB"
    if image.mode != target_mode:
        image = image.convert(target_mode)
    return image


def fit_variant(image: Image.Image, spec: VariantSpec) -> Image.Image:
    """Center-crop cover fit to the variant's exact dimensions."""
    return ImageOps.fit(
        image,
        (spec.width, spec.height),
        method=Image.Resampling.LANCZOS,
        centering=(0.5, 0.5),
    )


def encode_variant(image: Image.Image, quality: int) -> bytes:
    """Encode one variant as WebP.

    Raises:
        EncodeError: If the encoder fails
    """
    buffer = BytesIO()
    try:
        image.save(buffer, format=OUTPUT_FORMAT, quality=quality, method=4)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"Cannot encode {OUTPUT_FORMAT} variant: {e}") from e
    return buffer.getvalue()


def compute_perceptual_hash(image: Image.Image) -> str:
    """BlurHash (4x3 components) of a small copy of the image.

    Raises:
        EncodeError: If hashing fails
    """
    sample = image.convert("RGB")
    sample.thumbnail(HASH_SAMPLE_SIZE, Image.Resampling.BILINEAR)
    x_components, y_components = HASH_COMPONENTS
    try:
        return blurhash.encode(sample, x_components=x_components, y_components=y_components)
    except (ValueError, OSError) as e:
        raise EncodeError(f"Cannot compute perceptual hash: {e}") from e


def render_variants(
    data: bytes, variants: tuple[VariantSpec, ...] = DEFAULT_VARIANTS
) -> TransformResult:
    """Turn downloaded bytes into every variant plus the placeholder hash.

    Pure and synchronous: same bytes in, same bytes out.

    Raises:
        DecodeError: Payload is not a supported raster image
        EncodeError: Encoding or hashing failed
    """
    source = decode_image(data)
    encoded: dict[str, bytes] = {}
    hash_source: Optional[Image.Image] = None

    for spec in variants:
        resized = fit_variant(source, spec)
        encoded[spec.name] = encode_variant(resized, spec.quality)
        if spec.name == HASH_SOURCE_VARIANT:
            hash_source = resized

    if hash_source is None:
        raise EncodeError(f"Variant set has no {HASH_SOURCE_VARIANT!r} variant to hash")

    return TransformResult(
        variants=encoded,
        perceptual_hash=compute_perceptual_hash(hash_source),
        source_bytes=len(data),
        source_size=source.size,
    )


class ImageTransformer:
    """Fetches one remote image and renders its variant set."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cpu_limiter: asyncio.Semaphore,
        fetch_timeout: float = 30.0,
        variants: tuple[VariantSpec, ...] = DEFAULT_VARIANTS,
    ):
        """Initialize transformer.

        Args:
            http_client: Shared HTTP client (owned by the worker context)
            cpu_limiter: Semaphore bounding concurrent decode/encode threads
            fetch_timeout: Seconds allowed for one download
            variants: Variant set to produce
        """
        self.http_client = http_client
        self.cpu_limiter = cpu_limiter
        self.fetch_timeout = fetch_timeout
        self.variants = variants

    async def fetch(self, url: str) -> bytes:
        """Download the source image.

        Raises:
            FetchError: Network error, timeout or non-2xx response
        """
        try:
            response = await self.http_client.get(
                url, timeout=self.fetch_timeout, follow_redirects=True
            )
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out after {self.fetch_timeout}s fetching {url}: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Network error fetching {url}: {e}") from e

        if not response.is_success:
            raise FetchError(f"HTTP {response.status_code} fetching {url}")
        return response.content

    async def transform(self, url: str) -> TransformResult:
        """Fetch a URL and render its complete variant set.

        Raises:
            FetchError, DecodeError, EncodeError: The unit failed; no variants are returned
        """
        start_time = time.monotonic()
        data = await self.fetch(url)

        async with self.cpu_limiter:
            result = await asyncio.to_thread(render_variants, data, self.variants)

        logger.debug(
            "image_transform.succeeded",
            url=url,
            source_bytes=result.source_bytes,
            source_size=result.source_size,
            variant_bytes={name: len(blob) for name, blob in result.variants.items()},
            duration_seconds=time.monotonic() - start_time,
        )
        return result
