"""Core helpers + headless logic for CrashNet.

Separated from the HTTP service so unit tests and headless/CI usage do not
need a running server.

Distribution Notes:
This module is the stable public API surface for programmatic use. The
service (`crashnet_server.py`) and dispatcher (`crashnet.py`) are thin
layers over the objects and functions defined here and in
`crashnet_pipeline.py`.
"""
from __future__ import annotations
import os, sys, json, uuid, asyncio
from datetime import datetime, timezone
from dataclasses import dataclass, fields
from typing import Optional, Dict, Any

__version__ = "0.3.0"

# ---------------- Exit Codes & Schema ----------------
# These provide stable semantics for automation / CI integration.
SCHEMA_VERSION = 1
EXIT_SUCCESS = 0
EXIT_GENERIC_FAILURE = 1
EXIT_INPUT_ERROR = 2
EXIT_CONFIG_ERROR = 16
EXIT_FETCH_FAILED = 20
EXIT_PARSE_FAILED = 21

# ---------------- Rendering constants ----------------
TARGET_WIDTH = 640              # max <img> width in emitted markup
VIEWPORT_WIDTH = 640
VIEWPORT_HEIGHT = 480
SRCSET_REFERENCE_WIDTH = VIEWPORT_WIDTH
JPEG_QUALITY = 40
PNG_COMPRESS_LEVEL = 6
IMAGE_CACHE_CONTROL = "public, max-age=86400, immutable"
DEFAULT_FETCH_TIMEOUT = 20.0    # seconds
DEFAULT_NAV_TIMEOUT_MS = 15000
DEFAULT_PORT = 8000
DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:137.0) Gecko/20100101 Firefox/137.0"
HOST_KINDS = ("playwright", "inline")

__all__ = [
    "__version__",
    "ServiceConfig",
    "TransformContext",
    "TransformCallbacks",
    "EventEmitter",
    "CrashnetError",
    "InputError",
    "DataUriError",
    "FetchError",
    "ParseError",
    "ImageError",
    "headless_main",
]


# ---------------- Error taxonomy ----------------
class CrashnetError(Exception):
    """Base for every failure surfaced to a client (carries an HTTP status)."""
    http_status = 500


class InputError(CrashnetError):
    """Missing or malformed request input (url parameter, data URI)."""
    http_status = 400


class ImageError(CrashnetError):
    """Image could not be fetched, decoded or re-encoded."""
    http_status = 500


class DataUriError(InputError, ImageError):
    """Malformed ``data:`` URI (no comma separator, empty or undecodable payload)."""


class FetchError(CrashnetError):
    http_status = 500

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason


class ParseError(CrashnetError):
    http_status = 500


MODE_WEB = "web"
MODE_READ = "read"


@dataclass(frozen=True)
class TransformContext:
    """Per-run inputs shared by every pipeline stage (immutable for one run)."""
    target_base_url: str        # resolves relative references in the page (honours <base href>)
    origin_base_url: str        # scheme://host of the fetched page
    proxy_base_url: str         # origin of this proxy; prefixed to emitted /proxy and /image_proxy links
    mode: str = MODE_WEB

    @property
    def read(self) -> bool:
        return self.mode == MODE_READ


def _load_config_file(path: str) -> dict:
    """Read a JSON or YAML (``.yml``/``.yaml``) mapping of config keys.

    A missing path yields ``{}``. A file that cannot be read or parsed, or that
    holds anything but a mapping, raises InputError so callers can report it.
    """
    if not path or not os.path.exists(path): return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise InputError(f"Config file {path} is unreadable: {e}")
    if path.lower().endswith(('.yml', '.yaml')):
        import yaml  # type: ignore
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise InputError(f"Config file {path} is not valid YAML: {e}")
    else:
        try:
            data = json.loads(text) if text.strip() else None
        except ValueError as e:
            raise InputError(f"Config file {path} is not valid JSON: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InputError(f"Config file {path} must hold a mapping, not {type(data).__name__}")
    return data


def _as_bool(v) -> bool:
    if isinstance(v, bool): return v
    return str(v).strip().lower() in ('1','true','yes','on')


@dataclass
class ServiceConfig:
    bind: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    proxy_base_url: Optional[str] = None      # override for links emitted into pages (default: request origin)
    host_kind: str = "playwright"             # 'playwright' or 'inline'
    host_javascript: bool = False             # run page scripts inside the page host
    nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    minify: bool = True
    json_logs: bool = False
    events_file: Optional[str] = None         # optional NDJSON event sink
    progress_mode: str = 'plain'              # 'plain' or 'rich' (CLI only)
    config_file: Optional[str] = None

    def merge(self, values: Dict[str, Any]) -> "ServiceConfig":
        """Apply known keys from a mapping, coercing to the field's declared type."""
        for f in fields(self):
            if f.name not in values or values[f.name] is None:
                continue
            cur = getattr(self, f.name)
            v = values[f.name]
            try:
                if isinstance(cur, bool): v = _as_bool(v)
                elif isinstance(cur, int): v = int(v)
                elif isinstance(cur, float): v = float(v)
            except (TypeError, ValueError):
                raise InputError(f"Invalid value for {f.name}: {v!r}")
            setattr(self, f.name, v)
        if self.host_kind not in HOST_KINDS:
            raise InputError(f"Unknown page host: {self.host_kind}")
        return self

    @classmethod
    def from_env(cls, environ=None) -> "ServiceConfig":
        """Build config from CRASHNET_* variables (config file first, env wins)."""
        env = os.environ if environ is None else environ
        cfg = cls()
        path = env.get('CRASHNET_CONFIG')
        if path:
            cfg.merge(_load_config_file(path))
            cfg.config_file = path
        values = {}
        for f in fields(cls):
            key = 'CRASHNET_' + f.name.upper()
            if key in env:
                values[f.name] = env[key]
        return cfg.merge(values)


class TransformCallbacks:
    """Interface for CLI / service progress integration (all optional)."""
    def log(self, message: str): ...  # pragma: no cover - interface stub
    def stage(self, stage: str, pct: int): ...
    def is_canceled(self) -> bool: return False  # cooperative cancel poll


class ConsoleCallbacks(TransformCallbacks):
    """Plain console binding; stage lines go to stderr so stdout can carry HTML."""
    def __init__(self, stream=None):
        self.stream = stream
    def log(self, message: str): print(message, file=self.stream or sys.stderr)
    def stage(self, stage: str, pct: int): print(f"[{stage}] {pct}%", file=self.stream or sys.stderr)


# ---------------- Optional Rich Progress Callback -----------------
class RichCallbacks(TransformCallbacks):  # pragma: no cover - UI layer exercised indirectly
    def __init__(self):
        self._rich_available = False
        self._progress = None
        self._tasks: Dict[str, Any] = {}
        try:
            from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn
            self._Progress = Progress
            self._columns = [
                TextColumn("[bold cyan]{task.fields[stage]:>14}[/]"),
                BarColumn(),
                TextColumn("{task.percentage:>5.1f}%"),
                TimeElapsedColumn(),
            ]
            self._rich_available = True
        except Exception:
            pass
    def start(self):
        if self._rich_available:
            from rich.console import Console
            self._progress = self._Progress(*self._columns, transient=False, console=Console(stderr=True))
            self._progress.start()
    def stop(self):
        if self._progress:
            try: self._progress.stop()
            except Exception: pass
    def log(self, message: str):
        if self._progress:
            self._progress.console.print(message, markup=False, highlight=False)
        else:
            print(message, file=sys.stderr)
    def stage(self, stage: str, pct: int):
        if not self._progress: return
        if stage not in self._tasks:
            try: self._tasks[stage] = self._progress.add_task(description="", total=100, stage=stage)
            except Exception: return
        try: self._progress.update(self._tasks[stage], completed=max(0,min(100,pct)))
        except Exception: pass


def _invoke(cb, name: str, *a):
    """Call ``cb.name(*a)`` when the callbacks object provides it.

    Callbacks are observers: one that raises is reported on stderr and the run goes on.
    """
    fn = getattr(cb, name, None) if cb is not None else None
    if not callable(fn):
        return
    try:
        fn(*a)
    except Exception as e:
        print(f"[callbacks] {name} raised {type(e).__name__}: {e}", file=sys.stderr)



def log_to(log, message: str):
    """Call a plain ``log(str)`` callable if one was supplied."""
    if log is None: return
    try: log(message)
    except Exception: pass


class EventEmitter:
    """Structured JSON events with a stable envelope.

    Each call produces ``{event, ts, seq, run_id, schema_version, tool_version, **data}``.
    Events go to the log callback when ``json_logs`` is set and are appended
    to ``events_file`` (NDJSON) when one is configured. With neither set the
    emitter is a no-op.
    """
    def __init__(self, json_logs: bool = False, events_file: Optional[str] = None,
                 callbacks: Optional[TransformCallbacks] = None, run_id: Optional[str] = None):
        self.json_logs = json_logs
        self.events_file = events_file
        self.callbacks = callbacks
        self.run_id = run_id or uuid.uuid4().hex
        self._seq = 0

    @classmethod
    def for_config(cls, cfg: ServiceConfig, callbacks=None) -> "EventEmitter":
        return cls(cfg.json_logs, cfg.events_file, callbacks)

    @property
    def enabled(self) -> bool:
        return bool(self.json_logs or self.events_file)

    def __call__(self, event: str, **data):
        if not self.enabled:
            return
        self._seq += 1
        payload = {
            'event': event,
            'ts': datetime.now(timezone.utc).isoformat(),
            'seq': self._seq,
            'run_id': self.run_id,
            'schema_version': SCHEMA_VERSION,
            'tool_version': __version__,
            **data
        }
        line = json.dumps(payload, default=str)
        if self.json_logs:
            _invoke(self.callbacks, 'log', line)
        if self.events_file:
            try:
                with open(self.events_file,'a',encoding='utf-8') as ef:
                    ef.write(line+'\n')
            except OSError:
                _invoke(self.callbacks, 'log', f"[events] could not write {self.events_file}")


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, FetchError): return EXIT_FETCH_FAILED
    if isinstance(exc, ParseError): return EXIT_PARSE_FAILED
    if isinstance(exc, InputError): return EXIT_INPUT_ERROR
    return EXIT_GENERIC_FAILURE


def headless_main(argv: list[str]) -> int:
    """Convert a single page without the HTTP service.

    Fetches ``--url``, runs the web (or reader) pipeline and writes the
    resulting HTML 3.2 document to ``--out`` (stdout when omitted).
    """
    import argparse
    parser = argparse.ArgumentParser(description="Convert a web page to vintage-browser HTML (headless mode)")
    parser.add_argument('--headless', action='store_true', help=argparse.SUPPRESS)
    parser.add_argument('--url', required=True, help='Page URL to convert (scheme optional)')
    parser.add_argument('--out', default=None, help='Output file (default: stdout)')
    parser.add_argument('--read', action='store_true', help='Reader mode: extract main article content')
    parser.add_argument('--host', dest='host_kind', choices=list(HOST_KINDS), default='inline',
                        help='Page host providing computed style (playwright needs browsers installed)')
    parser.add_argument('--host-javascript', action='store_true', help='Let the page host run page scripts')
    parser.add_argument('--proxy-base', dest='proxy_base_url', default='http://127.0.0.1:%d' % DEFAULT_PORT,
                        help='Origin of the proxy that rewritten links should point at')
    parser.add_argument('--fetch-timeout', type=float, default=DEFAULT_FETCH_TIMEOUT)
    parser.add_argument('--user-agent', default=DEFAULT_USER_AGENT)
    parser.add_argument('--no-minify', action='store_true', help='Skip HTML minification')
    parser.add_argument('--config', default=None, help='Optional config file (JSON/YAML)')
    parser.add_argument('--json-logs', action='store_true', help='Emit machine-readable JSON log lines')
    parser.add_argument('--events-file', default=None, help='Write JSON events additionally to this NDJSON file')
    parser.add_argument('--progress', choices=['plain','rich'], default='plain', help='Progress rendering mode')
    args = parser.parse_args(argv)

    # Config merge: file values only fill arguments left at their defaults
    if args.config:
        if not os.path.exists(args.config):
            print(f"[config] not found: {args.config}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        try:
            cfg_file = _load_config_file(args.config)
        except InputError as e:
            print(f"[config] {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        defaults = {a.dest: a.default for a in parser._actions if hasattr(a,'dest')}
        for k,v in cfg_file.items():
            if not hasattr(args,k):
                continue
            cur=getattr(args,k)
            if cur == defaults.get(k) or cur in (None,''):
                setattr(args,k,v)
    try:
        cfg = ServiceConfig().merge({
            'proxy_base_url': args.proxy_base_url, 'host_kind': args.host_kind,
            'host_javascript': args.host_javascript, 'fetch_timeout': args.fetch_timeout,
            'user_agent': args.user_agent, 'minify': not args.no_minify, 'json_logs': args.json_logs,
            'events_file': args.events_file, 'progress_mode': args.progress, 'config_file': args.config,
        })
    except InputError as e:
        print(f"[config] {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    callbacks: TransformCallbacks
    rich_context = None
    if cfg.progress_mode == 'rich':
        rc = RichCallbacks()
        if getattr(rc, '_rich_available', False):
            rc.start()
            callbacks = rc
            rich_context = rc
        else:
            print('[progress] rich mode requested but Rich is not installed; falling back to plain output', file=sys.stderr)
            callbacks = ConsoleCallbacks()
    else:
        callbacks = ConsoleCallbacks()

    from crashnet_pipeline import convert_url
    from page_host import build_page_host
    from page_fetch import PageFetcher
    from reader_mode import TrafilaturaReader

    events = EventEmitter.for_config(cfg, callbacks)

    async def _run():
        host = build_page_host(cfg)
        fetcher = PageFetcher(timeout=cfg.fetch_timeout, user_agent=cfg.user_agent)
        try:
            return await convert_url(args.url, read=args.read, proxy_base_url=cfg.proxy_base_url,
                                     host=host, fetcher=fetcher, reader=TrafilaturaReader(),
                                     config=cfg, callbacks=callbacks, events=events)
        finally:
            await fetcher.aclose()
            await host.shutdown()

    exit_code = EXIT_SUCCESS
    try:
        res = asyncio.run(_run())
    except CrashnetError as e:
        callbacks.log(f"[error] {e}")
        exit_code = exit_code_for(e)
        res = None
    finally:
        if rich_context is not None:
            rich_context.stop()
    if res is not None:
        if args.out:
            with open(args.out,'wb') as f: f.write(res.body)
            callbacks.log(f"[out] wrote {len(res.body)} bytes to {args.out}")
        else:
            sys.stdout.buffer.write(res.body)
            sys.stdout.flush()
    events('summary_final', exit_code=exit_code, success=exit_code == EXIT_SUCCESS)
    return exit_code
