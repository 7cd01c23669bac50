import os, sys, io, json, asyncio, base64
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import httpx
import pytest
from PIL import Image
from crashnet_core import DataUriError, ImageError, InputError, FetchError, EventEmitter, IMAGE_CACHE_CONTROL  # type: ignore
from page_fetch import PageFetcher  # type: ignore
from image_transcode import ImageTranscoder, parse_data_uri, encode_image  # type: ignore


def _image_bytes(fmt, size=(100, 50), mode='RGB', color=(200, 10, 10)):
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def _transcoder(routes, host=None):
    def handler(request):
        path = request.url.path
        if path not in routes:
            return httpx.Response(404)
        body, ctype = routes[path]
        return httpx.Response(200, content=body, headers={'content-type': ctype})
    return ImageTranscoder(PageFetcher(transport=httpx.MockTransport(handler)), host)


def _transcode(transcoder, url):
    async def go():
        try:
            return await transcoder.transcode(url)
        finally:
            await transcoder.fetcher.aclose()
    return asyncio.run(go())


def test_parse_data_uri():
    payload = base64.b64encode(b'hello').decode()
    assert parse_data_uri(f'data:text/plain;base64,{payload}') == ('text/plain', b'hello')
    assert parse_data_uri('data:,a%20b') == ('text/plain', b'a b')


@pytest.mark.parametrize('uri', ['data:image/png;nodata', 'data:image/png;base64,', 'data:image/png;base64,@@@@', 'http://x'])
def test_malformed_data_uris(uri):
    with pytest.raises(DataUriError):
        parse_data_uri(uri)


def test_data_uri_error_is_input_and_image_error():
    assert issubclass(DataUriError, InputError)
    assert issubclass(DataUriError, ImageError)


def test_jpeg_output_is_bounded_and_baseline():
    body, ctype = encode_image(_image_bytes('BMP', (1600, 1200)), transparent=False)
    assert ctype == 'image/jpeg'
    with Image.open(io.BytesIO(body)) as img:
        assert img.format == 'JPEG'
        assert img.size == (640, 480)
        assert not img.info.get('progressive')


def test_transparent_output_keeps_alpha():
    src = _image_bytes('PNG', (2000, 100), mode='RGBA', color=(0, 0, 0, 0))
    body, ctype = encode_image(src, transparent=True)
    assert ctype == 'image/png'
    with Image.open(io.BytesIO(body)) as img:
        assert img.mode == 'RGBA'
        assert img.size == (640, 32)


def test_small_images_are_never_upscaled():
    body, _ = encode_image(_image_bytes('PNG', (10, 10)), transparent=False)
    with Image.open(io.BytesIO(body)) as img:
        assert img.size == (10, 10)


def test_corrupt_image_raises():
    with pytest.raises(ImageError):
        encode_image(b'not an image', transparent=False)


def test_fetched_gif_becomes_png():
    t = _transcoder({'/a.gif': (_image_bytes('GIF', (800, 800), mode='P', color=1), 'image/gif')})
    out = _transcode(t, 'http://img.example/a.gif')
    assert out.content_type == 'image/png'
    assert out.cache_control == IMAGE_CACHE_CONTROL
    with Image.open(io.BytesIO(out.body)) as img:
        assert img.size == (480, 480)


def test_fetched_jpeg_stays_jpeg():
    t = _transcoder({'/p': (_image_bytes('JPEG', (300, 200)), 'image/jpeg')})
    out = _transcode(t, 'http://img.example/p')
    assert out.content_type == 'image/jpeg'


def test_non_image_passes_through():
    t = _transcoder({'/doc.pdf': (b'%PDF-1.4', 'application/pdf')})
    out = _transcode(t, 'http://img.example/doc.pdf')
    assert out.body == b'%PDF-1.4'
    assert out.content_type == 'application/pdf'


def test_missing_upstream_image_is_fetch_error():
    t = _transcoder({})
    with pytest.raises(FetchError):
        _transcode(t, 'http://img.example/missing.png')


def test_data_uri_png():
    uri = 'data:image/png;base64,' + base64.b64encode(_image_bytes('PNG', (20, 20))).decode()
    out = _transcode(_transcoder({}), uri)
    assert out.content_type == 'image/png'


class _FakeHost:
    def __init__(self):
        self.seen = None

    async def rasterize_svg(self, svg):
        self.seen = svg
        return _image_bytes('PNG', (50, 50), mode='RGBA', color=(0, 0, 255, 255))


def test_svg_is_rasterized_through_host():
    host = _FakeHost()
    svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="50" height="50"></svg>'
    uri = 'data:image/svg+xml;base64,' + base64.b64encode(svg).decode()
    out = _transcode(_transcoder({}, host), uri)
    assert host.seen == svg
    assert out.content_type == 'image/png'


def test_svg_without_host_is_image_error():
    uri = 'data:image/svg+xml;base64,' + base64.b64encode(b'<svg></svg>').decode()
    with pytest.raises(ImageError):
        _transcode(_transcoder({}), uri)


def test_image_event_is_emitted():
    lines = []
    class _Log:
        def log(self, message):
            lines.append(message)
    t = _transcoder({'/p.png': (_image_bytes('PNG', (1280, 960)), 'image/png')})
    t.events = EventEmitter(json_logs=True, callbacks=_Log())
    _transcode(t, 'http://img.example/p.png')
    events = [json.loads(l) for l in lines]
    assert [e['event'] for e in events] == ['image']
    assert events[0]['source'] == 'remote'
    assert events[0]['out_type'] == 'image/png'
    assert events[0]['bytes_out'] > 0
