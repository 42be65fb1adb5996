import asyncio
import base64
import gc
import io

import httpx
import pytest
from PIL import Image

from llmshim.cache import ImageCache
from llmshim.errors import SerializationError, SizeExceededError, TransportError
from llmshim.images import (
    EmbeddedImage,
    ImageResolver,
    _encode,
    compress_image,
    limit_dimensions,
    parse_data_uri,
    sniff_mime_type,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def counting_transport(handler):
    """Wrap a MockTransport handler so tests can count requests per URL."""
    calls = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return handler(request)

    return httpx.MockTransport(_handler), calls


def image_request(*urls):
    return {
        "model": "m",
        "messages": [{
            "role": "user",
            "content": [{"type": "text", "text": "Describe"}]
            + [{"type": "image_url", "image_url": {"url": url}} for url in urls],
        }],
    }


class TestSniffing:
    @pytest.mark.parametrize(
        "data, expected",
        [
            (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
            (b"\x89PNG\r\n\x1a\nrest", "image/png"),
            (b"GIF89a....", "image/gif"),
            (b"BM......", "image/bmp"),
            (b"II*\x00....", "image/tiff"),
            (b"MM\x00*....", "image/tiff"),
            (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        ],
    )
    def test_magic_numbers(self, data, expected):
        assert sniff_mime_type(data) == expected

    def test_unknown_bytes_raise(self):
        with pytest.raises(SerializationError):
            sniff_mime_type(b"<html>not an image</html>")

    def test_real_encodings(self, make_image):
        assert sniff_mime_type(make_image("PNG")) == "image/png"
        assert sniff_mime_type(make_image("JPEG")) == "image/jpeg"
        assert sniff_mime_type(make_image("GIF")) == "image/gif"


class TestDataUris:
    def test_parse_keeps_payload_untouched(self):
        image = parse_data_uri("data:image/png;base64,AAAA")
        assert image == EmbeddedImage(mime_type="image/png", data="AAAA")
        assert image.data_uri == "data:image/png;base64,AAAA"

    def test_non_base64_rejected(self):
        with pytest.raises(SerializationError):
            parse_data_uri("data:text/plain,hello")

    @pytest.mark.parametrize("raw", [b"1234", b"12345", b"123456"])
    def test_size_is_decoded_length(self, raw):
        image = EmbeddedImage(mime_type="image/png", data=base64.b64encode(raw).decode("ascii"))
        assert image.size == len(raw)

    @pytest.mark.asyncio
    async def test_data_uri_needs_no_network(self):
        transport, calls = counting_transport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client)
            uri = "data:image/jpeg;base64,/9j/4AAQ"

            image = await resolver.resolve(uri)
            embedded = await resolver.embed_request_images(image_request(uri))

        assert image.data_uri == uri
        assert embedded["messages"][0]["content"][1]["image_url"]["url"] == uri
        assert calls == []


class TestCompression:
    def test_under_budget_is_unchanged(self, make_image):
        data = make_image("PNG")
        assert compress_image(data, "image/png", max_bytes=len(data)) is data

    def test_lossy_image_fits_budget(self, make_image):
        data = make_image("JPEG", size=(256, 256), noise=True, quality=95)
        budget = len(data) // 2

        result = compress_image(data, "image/jpeg", max_bytes=budget)

        assert len(result) <= budget
        assert sniff_mime_type(result) == "image/jpeg"

    def test_lossless_image_is_downsampled(self, make_image):
        data = make_image("PNG", size=(128, 128), noise=True)
        budget = 20_000

        result = compress_image(data, "image/png", max_bytes=budget)

        assert len(result) <= budget
        assert sniff_mime_type(result) == "image/png"
        width, height = Image.open(io.BytesIO(result)).size
        assert width < 128 and height < 128

    def test_lossy_image_is_downsampled_after_quality_floor(self, make_image, monkeypatch):
        data = make_image("JPEG", size=(512, 512), noise=True, quality=95)
        budget = 20_000
        attempts = []

        def recording_encode(image, mime_type, quality=None):
            attempts.append((quality, image.width))
            return _encode(image, mime_type, quality)

        monkeypatch.setattr("llmshim.images._encode", recording_encode)

        result = compress_image(data, "image/jpeg", max_bytes=budget, max_attempts=10)

        assert len(result) <= budget
        assert sniff_mime_type(result) == "image/jpeg"
        assert [quality for quality, _ in attempts[:5]] == [85, 70, 55, 40, 25]
        assert all(width == 512 for _, width in attempts[:5])
        # Quality restarts one step above the floor on the smaller image.
        assert attempts[5][0] == 40
        assert attempts[5][1] < 512
        assert len(attempts) <= 10
        width, height = Image.open(io.BytesIO(result)).size
        assert width < 512 and height < 512

    def test_best_effort_when_budget_unreachable(self, make_image):
        data = make_image("JPEG", size=(128, 128), noise=True, quality=95)

        result = compress_image(data, "image/jpeg", max_bytes=100, max_attempts=1)

        assert 100 < len(result) < len(data)

    def test_limit_dimensions(self, make_image):
        data = make_image("PNG", size=(400, 100))
        result = limit_dimensions(data, "image/png", 200)
        assert Image.open(io.BytesIO(result)).size == (200, 50)
        assert limit_dimensions(data, "image/png", 400) is data


class TestResolver:
    @pytest.mark.asyncio
    async def test_remote_image_is_fetched_sniffed_and_cached(self, make_image):
        png = make_image("PNG")
        # Content-Type is advisory; the bytes decide.
        transport, calls = counting_transport(
            lambda request: httpx.Response(200, content=png, headers={"content-type": "image/jpeg"})
        )
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client)
            first = await resolver.resolve("https://example.com/a.png")
            second = await resolver.resolve("https://example.com/a.png")

        assert first.mime_type == "image/png"
        assert first.to_bytes() == png
        assert first.size == len(png)
        assert second == first
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_200_is_transport_error(self):
        transport, _ = counting_transport(lambda request: httpx.Response(404))
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client)
            with pytest.raises(TransportError) as exc_info:
                await resolver.resolve("https://example.com/missing.png")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_declared_oversize_raises(self, make_image):
        transport, _ = counting_transport(
            lambda request: httpx.Response(200, content=make_image("PNG"), headers={"content-length": "999999"})
        )
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client, max_download_bytes=1000)
            with pytest.raises(SizeExceededError):
                await resolver.resolve("https://example.com/big.png")

    @pytest.mark.asyncio
    async def test_streamed_oversize_raises(self):
        async def body():
            for _ in range(10):
                yield b"\x89PNG\r\n\x1a\n" + b"\x00" * 200

        transport, _ = counting_transport(lambda request: httpx.Response(200, content=body()))
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client, max_download_bytes=1000)
            with pytest.raises(SizeExceededError):
                await resolver.resolve("https://example.com/stream.png")

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self):
        def fail(request):
            raise httpx.ConnectError("unreachable", request=request)

        transport, _ = counting_transport(fail)
        async with httpx.AsyncClient(transport=transport) as http_client:
            resolver = ImageResolver(http_client=http_client)
            with pytest.raises(TransportError):
                await resolver.resolve("https://example.com/x.png")

    @pytest.mark.asyncio
    async def test_unsupported_reference(self):
        with pytest.raises(SerializationError):
            await ImageResolver().resolve("ftp://example.com/x.png")


class TestBatch:
    def test_limiter_is_shared_within_a_loop_and_dropped_with_it(self):
        resolver = ImageResolver(max_concurrency=2)

        async def grab():
            return resolver._limiter(), resolver._limiter()

        first, again = asyncio.run(grab())
        second, _ = asyncio.run(grab())
        gc.collect()

        assert first is again
        assert second is not first
        assert len(resolver._limiters) == 0

    @pytest.mark.asyncio
    async def test_one_hanging_fetch_does_not_sink_the_batch(self, monkeypatch, make_image):
        png = make_image("PNG")
        urls = [f"https://example.com/{i}.png" for i in range(5)]
        resolver = ImageResolver(batch_base_timeout=1.0, batch_per_item_timeout=0.0)

        async def fake_fetch(url):
            if url.endswith("/3.png"):
                await asyncio.sleep(30)
            return png, "image/png"

        monkeypatch.setattr(resolver, "_fetch", fake_fetch)

        results, failures = await resolver.resolve_batch(urls + [urls[0]])

        assert sorted(results) == sorted(u for u in urls if not u.endswith("/3.png"))
        assert list(failures) == [urls[3]]
        assert isinstance(failures[urls[3]], TransportError)

    @pytest.mark.asyncio
    async def test_failed_url_is_missing_from_resolve_all(self, monkeypatch, make_image):
        png = make_image("PNG")
        resolver = ImageResolver()

        async def fake_fetch(url):
            if "bad" in url:
                raise TransportError("Failed to download image. HTTP response code: 500", status_code=500)
            return png, "image/png"

        monkeypatch.setattr(resolver, "_fetch", fake_fetch)

        results = await resolver.resolve_all(["https://example.com/good.png", "https://example.com/bad.png"])

        assert list(results) == ["https://example.com/good.png"]

    @pytest.mark.asyncio
    async def test_embed_requires_all_images_when_asked(self, monkeypatch):
        resolver = ImageResolver()

        async def fake_fetch(url):
            raise TransportError("down")

        monkeypatch.setattr(resolver, "_fetch", fake_fetch)
        request = image_request("https://example.com/a.png")

        unchanged = await resolver.embed_request_images(request)
        assert unchanged["messages"][0]["content"][1]["image_url"]["url"] == "https://example.com/a.png"

        with pytest.raises(TransportError, match="example.com/a.png"):
            await resolver.embed_request_images(request, require_embedded=True)

    @pytest.mark.asyncio
    async def test_embed_replaces_urls_without_mutating_input(self, monkeypatch, make_image):
        png = make_image("PNG")
        resolver = ImageResolver()

        async def fake_fetch(url):
            return png, None

        monkeypatch.setattr(resolver, "_fetch", fake_fetch)
        request = image_request("https://example.com/a.png")

        embedded = await resolver.embed_request_images(request, require_embedded=True)

        expected = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
        assert embedded["messages"][0]["content"][1]["image_url"]["url"] == expected
        assert request["messages"][0]["content"][1]["image_url"]["url"] == "https://example.com/a.png"


class TestCache:
    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = ImageCache(ttl_seconds=60, clock=clock)
        image = EmbeddedImage("image/png", "AAAA")
        cache.put("https://example.com/a.png", image)

        clock.now += 59
        assert cache.get("https://example.com/a.png") == image

        clock.now += 2
        assert cache.get("https://example.com/a.png") is None
        assert len(cache) == 0

    def test_clear_expired_counts_dropped(self):
        clock = FakeClock()
        cache = ImageCache(ttl_seconds=10, clock=clock)
        cache.put("old", EmbeddedImage("image/png", "AAAA"))
        clock.now += 20
        cache.put("new", EmbeddedImage("image/png", "BBBB"))

        assert cache.clear_expired() == 1
        assert "new" in cache
        assert "old" not in cache

        cache.clear()
        assert len(cache) == 0
