"""Command-line entrypoint for running the proxy server."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

import uvicorn

from ..common.settings import ProxySettings
from .app import create_app


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the binary artifact caching proxy")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on (default: 8080)")
    parser.add_argument("--remote-url", help="Origin base URL; overrides FILEPROXY_REMOTE_URL")
    parser.add_argument("--storage-path", help="Storage directory; overrides FILEPROXY_STORAGE_PATH")
    parser.add_argument("--log-level", help="Log level; overrides FILEPROXY_LOG_LEVEL")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> ProxySettings:
    overrides = {}
    if args.remote_url:
        overrides["remote_url"] = args.remote_url
    if args.storage_path:
        overrides["storage_path"] = args.storage_path
    if args.log_level:
        overrides["log_level"] = args.log_level
    return ProxySettings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = build_settings(args)
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
