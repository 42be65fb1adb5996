"""
Image ingestion: turn image references into embedded base64 payloads.

Remote URLs are downloaded with bounded timeouts and a hard size cap, typed by
sniffing their leading bytes, optionally scaled to a maximum dimension and
recompressed until they fit the size budget. Data URIs pass through untouched.
"""
import asyncio
import base64
import copy
import logging
import math
import weakref
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional, Tuple

import httpx
from PIL import Image

from .cache import ImageCache
from .errors import SerializationError, SizeExceededError, TransportError
from .types import CompletionRequest

log = logging.getLogger(__name__)

DEFAULT_MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_MAX_CONCURRENCY = 8
BATCH_BASE_TIMEOUT = 10.0
BATCH_PER_ITEM_TIMEOUT = 2.0

MAX_COMPRESSION_ATTEMPTS = 10
QUALITY_START = 85
QUALITY_STEP = 15
QUALITY_FLOOR = 25

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# (mime type, Pillow format name)
_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/bmp": "BMP",
    "image/tiff": "TIFF",
    "image/webp": "WEBP",
}
LOSSY_MIME_TYPES = frozenset({"image/jpeg", "image/webp"})


@dataclass(frozen=True)
class EmbeddedImage:
    """
    A resolved image: MIME type plus base64 payload.
    """
    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @property
    def size(self) -> int:
        """Decoded payload size in bytes."""
        padding = self.data.count("=", max(len(self.data) - 2, 0))
        return len(self.data) * 3 // 4 - padding

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)


# =============================================================================
# Format sniffing
# =============================================================================

def sniff_mime_type(data: bytes) -> str:
    """
    Derive the MIME type from the leading bytes of an image.

    Raises:
        SerializationError: If the bytes match no supported image format.
    """
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data.startswith(b"BM"):
        return "image/bmp"
    if data.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    raise SerializationError(f"Unrecognized image format (leading bytes: {data[:12].hex()})")


def is_data_uri(url: str) -> bool:
    return url.startswith("data:")


def is_remote_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def parse_data_uri(url: str) -> EmbeddedImage:
    """
    Split a `data:<mime>;base64,<payload>` URI without touching the payload.
    """
    try:
        header, payload = url.split(",", 1)
    except ValueError:
        raise SerializationError("Malformed data URI: missing ','") from None
    meta = header[len("data:"):].split(";")
    mime_type = meta[0] or "application/octet-stream"
    if "base64" not in meta[1:]:
        raise SerializationError("Only base64 data URIs are supported")
    return EmbeddedImage(mime_type=mime_type, data=payload)


# =============================================================================
# Size budgeting
# =============================================================================

def _open(data: bytes) -> Image.Image:
    image = Image.open(BytesIO(data))
    image.load()
    return image


def _encode(image: Image.Image, mime_type: str, quality: Optional[int] = None) -> bytes:
    fmt = _FORMATS.get(mime_type, "PNG")
    buf = BytesIO()
    if fmt == "JPEG":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(buf, format=fmt, quality=quality or QUALITY_START, optimize=True)
    elif fmt == "WEBP":
        image.save(buf, format=fmt, quality=quality or QUALITY_START)
    elif fmt == "PNG":
        image.save(buf, format=fmt, optimize=True)
    else:
        image.save(buf, format=fmt)
    return buf.getvalue()


def _downsample(image: Image.Image, factor: float) -> Image.Image:
    width = max(1, int(image.width * factor))
    height = max(1, int(image.height * factor))
    return image.resize((width, height), Image.Resampling.LANCZOS)


def _downsample_factor(current_size: int, target_size: int) -> float:
    # Encoded size scales roughly with pixel count, i.e. with factor**2.
    factor = math.sqrt(target_size / current_size) * 0.95
    return min(max(factor, 0.1), 0.9)


def compress_image(
    data: bytes,
    mime_type: str,
    max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
    max_attempts: int = MAX_COMPRESSION_ATTEMPTS,
) -> bytes:
    """
    Shrink an encoded image until it fits `max_bytes`.

    Lossy formats step quality down from QUALITY_START by QUALITY_STEP; once the
    floor is reached the image is downsampled by a factor derived from
    current/target size and quality reduction resumes one step above the floor.
    Lossless formats are only downsampled. Each attempt encodes once; after
    `max_attempts` the smallest output produced so far is returned even if it
    is still over budget.

    Args:
        data (bytes): Encoded image.
        mime_type (str): Sniffed MIME type of `data`; the output keeps it.
        max_bytes (int): Size budget in bytes (pre-base64).
        max_attempts (int): Upper bound on encode attempts.

    Returns:
        bytes: `data` itself when already within budget, else the best attempt.
    """
    if len(data) <= max_bytes:
        return data

    lossy = mime_type in LOSSY_MIME_TYPES
    image = _open(data)
    best = data
    quality = QUALITY_START

    for attempt in range(1, max_attempts + 1):
        if not lossy or quality < QUALITY_FLOOR:
            factor = _downsample_factor(len(best), max_bytes)
            image = _downsample(image, factor)
            if lossy:
                quality = QUALITY_FLOOR + QUALITY_STEP
        output = _encode(image, mime_type, quality if lossy else None)
        log.debug(
            "Compression attempt %d: %dx%d quality=%s -> %d bytes",
            attempt, image.width, image.height, quality if lossy else "-", len(output),
        )
        if len(output) < len(best):
            best = output
        if len(output) <= max_bytes:
            return output
        if lossy:
            quality -= QUALITY_STEP

    log.warning(
        "Image still %d bytes after %d attempts (budget %d bytes); using best effort",
        len(best), max_attempts, max_bytes,
    )
    return best


def limit_dimensions(data: bytes, mime_type: str, max_dimension: int) -> bytes:
    """
    Scale an image down so neither side exceeds `max_dimension` pixels.
    """
    image = _open(data)
    if image.width <= max_dimension and image.height <= max_dimension:
        return data
    log.info(
        "Image is %dx%d, scaling to fit %dpx", image.width, image.height, max_dimension
    )
    image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return _encode(image, mime_type)


# =============================================================================
# Resolver
# =============================================================================

class ImageResolver:
    """
    Resolves image references to embedded images.

    Owns an `ImageCache` (pass one in to share or isolate it) and a concurrency
    limit shared by every batch run through this resolver.
    """

    def __init__(
        self,
        cache: Optional[ImageCache] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        max_dimension: Optional[int] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        batch_base_timeout: float = BATCH_BASE_TIMEOUT,
        batch_per_item_timeout: float = BATCH_PER_ITEM_TIMEOUT,
    ):
        self.cache = cache if cache is not None else ImageCache()
        self.http_client = http_client
        self.max_download_bytes = max_download_bytes
        self.max_image_bytes = max_image_bytes
        self.max_dimension = max_dimension
        self.max_concurrency = max_concurrency
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.batch_base_timeout = batch_base_timeout
        self.batch_per_item_timeout = batch_per_item_timeout
        self._limiters: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    def _limiter(self) -> asyncio.Semaphore:
        # Semaphores bind to the running loop: one per loop, dropped with the loop.
        loop = asyncio.get_running_loop()
        limiter = self._limiters.get(loop)
        if limiter is None:
            limiter = self._limiters[loop] = asyncio.Semaphore(self.max_concurrency)
        return limiter

    async def resolve(self, url: str) -> EmbeddedImage:
        """
        Resolve one image reference.

        Data URIs are returned as-is with no network access. Remote URLs are
        served from the cache when fresh, otherwise fetched, sniffed and
        budgeted, then cached.

        Raises:
            SizeExceededError: The download exceeded `max_download_bytes`.
            TransportError: The fetch failed or returned a non-2xx status.
            SerializationError: The reference or the bytes are not a supported image.
        """
        if is_data_uri(url):
            return parse_data_uri(url)
        if not is_remote_url(url):
            raise SerializationError(f"Unsupported image reference: {url[:50]}")

        cached = self.cache.get(url)
        if cached is not None:
            log.debug("Using cached image for URL: %s", url)
            return cached

        raw, declared_type = await self._fetch(url)
        mime_type = sniff_mime_type(raw)
        if declared_type and declared_type != mime_type:
            log.debug("Declared Content-Type %s for %s, sniffed %s", declared_type, url, mime_type)

        processed = await asyncio.to_thread(self._prepare, raw, mime_type)
        image = EmbeddedImage(mime_type=mime_type, data=base64.b64encode(processed).decode("ascii"))
        self.cache.put(url, image)
        log.debug("Resolved image %s: %d bytes (%s)", url, image.size, mime_type)
        return image

    def _prepare(self, raw: bytes, mime_type: str) -> bytes:
        data = raw
        try:
            if self.max_dimension:
                data = limit_dimensions(data, mime_type, self.max_dimension)
            return compress_image(data, mime_type, self.max_image_bytes)
        except OSError as e:
            raise SerializationError(f"Could not re-encode {mime_type} image: {e}", raw_error=str(e)) from e

    async def _fetch(self, url: str) -> Tuple[bytes, Optional[str]]:
        if self.http_client is not None:
            return await self._download(self.http_client, url)
        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        ) as http_client:
            return await self._download(http_client, url)

    async def _download(self, http_client: httpx.AsyncClient, url: str) -> Tuple[bytes, Optional[str]]:
        try:
            async with http_client.stream("GET", url, timeout=self.timeout) as response:
                if response.status_code != 200:
                    raise TransportError(
                        f"Failed to download image. HTTP response code: {response.status_code}",
                        status_code=response.status_code,
                    )
                declared_length = response.headers.get("content-length")
                if declared_length and declared_length.isdigit() and int(declared_length) > self.max_download_bytes:
                    raise SizeExceededError(
                        f"Image size {declared_length} exceeds maximum allowed size of "
                        f"{self.max_download_bytes} bytes"
                    )
                buffer = bytearray()
                async for piece in response.aiter_bytes():
                    buffer.extend(piece)
                    if len(buffer) > self.max_download_bytes:
                        raise SizeExceededError(
                            f"Image exceeds maximum allowed size of {self.max_download_bytes} bytes"
                        )
                content_type = response.headers.get("content-type")
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to download image {url}: {e}", raw_error=str(e)) from e

        declared_type = content_type.split(";")[0].strip().lower() if content_type else None
        return bytes(buffer), declared_type

    async def _resolve_bounded(self, url: str) -> EmbeddedImage:
        async with self._limiter():
            return await self.resolve(url)

    async def resolve_batch(
        self, urls: List[str]
    ) -> Tuple[Dict[str, EmbeddedImage], Dict[str, BaseException]]:
        """
        Resolve many references concurrently, reporting failures separately.

        Each distinct remote URL runs as its own task under the shared
        concurrency limit. The whole batch waits at most
        `batch_base_timeout + batch_per_item_timeout * n`; unfinished fetches
        are cancelled and reported as TransportError.

        Returns:
            Tuple of (resolved images by URL, failures by URL).
        """
        unique = list(dict.fromkeys(u for u in urls if u and not is_data_uri(u)))
        if not unique:
            return {}, {}

        log.debug("Starting batch download of %d images", len(unique))
        tasks = {asyncio.create_task(self._resolve_bounded(url)): url for url in unique}
        timeout = self.batch_base_timeout + self.batch_per_item_timeout * len(unique)
        done, pending = await asyncio.wait(tasks, timeout=timeout)

        results: Dict[str, EmbeddedImage] = {}
        failures: Dict[str, BaseException] = {}

        if pending:
            log.warning("Batch download timed out after %.1fs, %d image(s) unfinished", timeout, len(pending))
            for task in pending:
                task.cancel()
                failures[tasks[task]] = TransportError(
                    f"Image download timed out after {timeout:.1f}s: {tasks[task]}"
                )
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            url = tasks[task]
            if task.cancelled():
                failures[url] = TransportError(f"Image download cancelled: {url}")
                continue
            exc = task.exception()
            if exc is not None:
                log.warning("Failed to download image %s: %s", url, exc)
                failures[url] = exc
                continue
            results[url] = task.result()

        log.debug("Batch download completed: %d of %d images", len(results), len(unique))
        return results, failures

    async def resolve_all(self, urls: List[str]) -> Dict[str, EmbeddedImage]:
        """
        Resolve many references; a URL missing from the result failed.
        """
        results, _ = await self.resolve_batch(urls)
        return results

    async def embed_request_images(
        self,
        request: CompletionRequest,
        *,
        require_embedded: bool = False,
    ) -> CompletionRequest:
        """
        Return a copy of `request` with remote image URLs replaced by data URIs.

        All remote images across all messages are resolved in one batch.
        Images that fail keep their URL, unless `require_embedded` is set, in
        which case a TransportError naming them is raised.
        """
        urls = [url for url in _image_urls(request) if is_remote_url(url)]
        if not urls:
            return request

        resolved, failures = await self.resolve_batch(urls)
        missing = [url for url in dict.fromkeys(urls) if url not in resolved]
        if missing and require_embedded:
            first = failures.get(missing[0])
            raise TransportError(
                f"Could not embed {len(missing)} image(s): {', '.join(missing)}",
                raw_error=str(first) if first is not None else None,
            ) from first

        embedded = copy.deepcopy(request)
        for message in embedded.get("messages", []):
            content = message.get("content")
            if not isinstance(content, list):
                continue
            for part in content:
                if part.get("type") != "image_url":
                    continue
                image_url = part.get("image_url", {})
                image = resolved.get(image_url.get("url", ""))
                if image is not None:
                    image_url["url"] = image.data_uri
        return embedded


def _image_urls(request: CompletionRequest) -> List[str]:
    urls = []
    for message in request.get("messages", []):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if part.get("type") == "image_url":
                url = part.get("image_url", {}).get("url")
                if url:
                    urls.append(url)
    return urls
