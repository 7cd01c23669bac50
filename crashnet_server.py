"""CrashNet HTTP service (FastAPI).

Routes:
  GET  /                 entry page with a URL form
  GET  /proxy?url=..     converted page (``read=true`` for reader mode)
  POST /proxy?url=..     same, with the form body forwarded to the target
  GET  /image_proxy?url= transcoded image bytes (URL or data: URI)

Anything else is a legacy-styled 404 page.

Usage:
  python crashnet_server.py            (binds CRASHNET_BIND / CRASHNET_PORT)
  python crashnet.py --port 8080       (same, via the dispatcher)

The page host (Chromium by default) is created on first use and shut down
with the application lifespan. Every request gets its own Document and
browser context; nothing is cached between requests.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from html import escape
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from crashnet_core import (
    __version__, TARGET_WIDTH, CrashnetError, InputError, ServiceConfig, TransformCallbacks, EventEmitter,
)
from crashnet_pipeline import convert_url
from image_transcode import ImageTranscoder
from page_fetch import PageFetcher
from page_host import build_page_host
from proxy_links import proxy_endpoint, split_proxy_params
from reader_mode import TrafilaturaReader

DISCONNECT_POLL_SECONDS = 0.25


def legacy_page(title: str, heading: str, paragraphs, home_link: bool = True) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    link = '<p><a href="/">Return to Homepage</a></p>' if home_link else ""
    return (
        "<!DOCTYPE HTML PUBLIC \"-//W3C//DTD HTML 3.2 Final//EN\">\n"
        f"<html><head><title>{escape(title)}</title></head>"
        '<body bgcolor="white" text="black" link="blue" vlink="purple">'
        f"<center><h1>{escape(heading)}</h1>{body}{link}</center>"
        "</body></html>"
    )


def error_page(heading: str, message: str) -> str:
    return legacy_page("Crashnet - Error", heading, [escape(message)])


def homepage(proxy_base_url: str) -> str:
    return (
        "<!DOCTYPE HTML PUBLIC \"-//W3C//DTD HTML 3.2 Final//EN\">\n"
        "<html><head><title>Crashnet - Browse</title></head>"
        '<body bgcolor="white" text="black" link="blue" vlink="purple"><center>'
        "<h1>CRASHNET</h1>"
        "<p>Web Proxy for Vintage Computers</p><br>"
        f'<form action="{escape(proxy_endpoint(proxy_base_url))}" method="get">'
        '<input type="text" name="url" size="40"> <input type="submit" value="Go">'
        "</form><br>"
        f'<hr width="{TARGET_WIDTH // 2}"><br>'
        "<p>Crashnet strips modern web elements to make sites accessible on vintage computers.<br>"
        "No SSL, CSS, JavaScript - just pure HTML content.</p>"
        "</center></body></html>"
    )


class ServerCallbacks(TransformCallbacks):
    """Per-request console binding; ``cancel()`` is flipped when the client goes away."""
    def __init__(self):
        self.canceled = False
    def log(self, message: str): print(f"[proxy] {message}", flush=True)
    def stage(self, stage: str, pct: int): pass
    def is_canceled(self) -> bool: return self.canceled
    def cancel(self): self.canceled = True


class ClientDisconnected(Exception):
    pass


async def run_until_disconnect(request: Request, coro, callbacks: ServerCallbacks):
    """Await ``coro``, abandoning it as soon as the client disconnects."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                callbacks.cancel()
                task.cancel()
                callbacks.log(f"[cancel] client disconnected: {request.url.path}")
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def create_app(config: Optional[ServiceConfig] = None, host=None, fetcher=None, reader=None) -> FastAPI:
    """Build the service. ``host``/``fetcher``/``reader`` are injectable (tests pass fakes);
    missing ones are created from ``config`` on first use."""
    cfg = config or ServiceConfig.from_env()
    boot_log = ServerCallbacks()
    state = {'host': host, 'fetcher': fetcher, 'reader': reader}

    def _host():
        if state['host'] is None:
            state['host'] = build_page_host(cfg, log=boot_log.log)
        return state['host']

    def _fetcher():
        if state['fetcher'] is None:
            state['fetcher'] = PageFetcher(timeout=cfg.fetch_timeout, user_agent=cfg.user_agent)
        return state['fetcher']

    def _reader():
        if state['reader'] is None:
            state['reader'] = TrafilaturaReader(log=boot_log.log)
        return state['reader']

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if state['host'] is not None:
            try: await state['host'].shutdown()
            except Exception as e: boot_log.log(f"[host] shutdown failed: {e}")
        if state['fetcher'] is not None:
            await state['fetcher'].aclose()

    app = FastAPI(title="CrashNet", version=__version__, lifespan=lifespan)

    def _proxy_base(request: Request) -> str:
        return (cfg.proxy_base_url or str(request.base_url)).rstrip("/")

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        return HTMLResponse(homepage(_proxy_base(request)))

    @app.api_route("/proxy", methods=["GET", "POST"])
    async def proxy(request: Request):
        url, read, params = split_proxy_params(request.query_params.multi_items())
        form = None
        if request.method == "POST":
            body = await request.form()
            form_url, form_read, form = split_proxy_params(
                (k, v) for k, v in body.multi_items() if isinstance(v, str))
            url = url or form_url
            read = read or form_read
        if not url or not url.strip():
            return HTMLResponse(legacy_page("Crashnet - Error", "Error: Missing URL",
                                            ["Please provide a URL to proxy."]), status_code=400)
        callbacks = ServerCallbacks()
        events = EventEmitter.for_config(cfg, callbacks)
        work = convert_url(url, read=read, proxy_base_url=_proxy_base(request), host=_host(),
                           fetcher=_fetcher(), reader=_reader(), config=cfg, callbacks=callbacks,
                           events=events, method=request.method, params=params, form=form)
        try:
            res = await run_until_disconnect(request, work, callbacks)
        except ClientDisconnected:
            return Response(status_code=499)
        except InputError as e:
            return HTMLResponse(error_page("Error: Invalid URL", str(e)), status_code=e.http_status)
        except CrashnetError as e:
            callbacks.log(f"[error] {url}: {e}")
            return HTMLResponse(error_page("Error Fetching URL", str(e)), status_code=e.http_status)
        except Exception as e:
            callbacks.log(f"[error] {url}: unexpected {type(e).__name__}: {e}")
            return HTMLResponse(error_page("Error Fetching URL", str(e) or type(e).__name__), status_code=500)
        return Response(content=res.body, media_type=res.content_type)

    @app.get("/image_proxy")
    async def image_proxy(request: Request, url: Optional[str] = None):
        if not url:
            return PlainTextResponse("Missing URL parameter", status_code=400)
        callbacks = ServerCallbacks()
        transcoder = ImageTranscoder(_fetcher(), _host(), log=callbacks.log,
                                     events=EventEmitter.for_config(cfg, callbacks))
        try:
            out = await run_until_disconnect(request, transcoder.transcode(url), callbacks)
        except ClientDisconnected:
            return Response(status_code=499)
        except Exception as e:
            callbacks.log(f"[image] {url[:120]}: {e}")
            return PlainTextResponse(f"Image Error: {e}", status_code=500)
        return Response(content=out.body, media_type=out.content_type,
                        headers={"Cache-Control": out.cache_control})

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException):
        if exc.status_code != 404:
            return await http_exception_handler(request, exc)
        return HTMLResponse(legacy_page("Crashnet - Page Not Found", "Page Not Found",
                                        ["The page you requested does not exist."]), status_code=404)

    return app


app = create_app()


if __name__ == "__main__":
    _cfg = ServiceConfig.from_env()
    uvicorn.run(create_app(_cfg), host=_cfg.bind, port=_cfg.port)
