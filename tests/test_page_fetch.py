import os, sys, asyncio
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import httpx
import pytest
from crashnet_core import FetchError  # type: ignore
from page_fetch import PageFetcher  # type: ignore


def _fetch(handler, *args, **kwargs):
    async def go():
        fetcher = PageFetcher(timeout=5, user_agent='TestAgent/1.0', transport=httpx.MockTransport(handler))
        try:
            return await fetcher.fetch(*args, **kwargs)
        finally:
            await fetcher.aclose()
    return asyncio.run(go())


def test_html_response():
    seen = {}
    def handler(request):
        seen['ua'] = request.headers.get('user-agent')
        return httpx.Response(200, content='<p>café</p>'.encode('utf-8'),
                              headers={'content-type': 'text/html; charset=utf-8'})
    res = _fetch(handler, 'http://example.com/')
    assert seen['ua'] == 'TestAgent/1.0'
    assert res.is_html
    assert res.mime == 'text/html'
    assert res.text == '<p>café</p>'
    assert res.final_url == 'http://example.com/'


def test_redirects_are_followed():
    def handler(request):
        if request.url.path == '/old':
            return httpx.Response(301, headers={'location': 'http://example.com/new'})
        return httpx.Response(200, content=b'ok', headers={'content-type': 'text/plain'})
    res = _fetch(handler, 'http://example.com/old')
    assert res.final_url == 'http://example.com/new'
    assert not res.is_html


def test_error_status_is_surfaced():
    with pytest.raises(FetchError) as ei:
        _fetch(lambda r: httpx.Response(404), 'http://example.com/missing')
    assert str(ei.value) == 'Failed to fetch URL: 404 Not Found'
    assert ei.value.status == 404


def test_transport_error():
    def handler(request):
        raise httpx.ConnectError('refused', request=request)
    with pytest.raises(FetchError):
        _fetch(handler, 'http://down.example/')


def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout('slow', request=request)
    with pytest.raises(FetchError) as ei:
        _fetch(handler, 'http://slow.example/')
    assert 'timed out' in str(ei.value)


def test_post_forwards_form_body():
    seen = {}
    def handler(request):
        seen['method'] = request.method
        seen['body'] = request.content.decode()
        return httpx.Response(200, content=b'<p>ok</p>', headers={'content-type': 'text/html'})
    _fetch(handler, 'http://example.com/login', method='POST', form=[('user', 'bob'), ('tag', 'a'), ('tag', 'b')])
    assert seen['method'] == 'POST'
    assert seen['body'] == 'user=bob&tag=a&tag=b'
