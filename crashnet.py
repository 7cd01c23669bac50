"""crashnet entrypoint (minimal dispatcher only).

Core implementation lives in:
  * crashnet_core.py      - config, errors, events + headless CLI
  * crashnet_pipeline.py  - fetch / snapshot / stage pipeline
  * crashnet_server.py    - FastAPI service

This file stays tiny so ``--headless`` usage never imports the web stack.
"""
from __future__ import annotations

import sys
from crashnet_core import headless_main, ServiceConfig, InputError, EXIT_CONFIG_ERROR


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if '--headless' in args:
        # Strip the marker and delegate entirely to core CLI
        return headless_main([a for a in args if a != '--headless'])
    import argparse
    parser = argparse.ArgumentParser(description="CrashNet web proxy for vintage browsers")
    parser.add_argument('--bind', default=None, help='Interface to listen on (default 127.0.0.1)')
    parser.add_argument('--port', type=int, default=None, help='Port to listen on (default 8000)')
    parser.add_argument('--config', default=None, help='Optional config file (JSON/YAML)')
    ns = parser.parse_args(args)
    try:
        env = None
        if ns.config:
            import os
            env = dict(os.environ, CRASHNET_CONFIG=ns.config)
        cfg = ServiceConfig.from_env(env).merge({'bind': ns.bind, 'port': ns.port})
    except InputError as e:
        print(f"[config] {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    # Lazy import so headless runs stay light
    import uvicorn
    from crashnet_server import create_app
    print(f"[server] CrashNet listening on http://{cfg.bind}:{cfg.port}/")
    uvicorn.run(create_app(cfg), host=cfg.bind, port=cfg.port)
    return 0


if __name__ == '__main__':  # pragma: no cover
    raise SystemExit(main())
