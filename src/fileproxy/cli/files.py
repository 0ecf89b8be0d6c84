"""CLI helper for reading and writing artifacts through the file endpoint."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

import httpx


CHUNK_SIZE = 64 * 1024


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage artifacts stored by a fileproxy server")
    parser.add_argument("--server-url", required=True, help="Proxy base URL, e.g. http://localhost:8080")
    parser.add_argument("--token", help="Upload token for write operations")
    parser.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")
    commands = parser.add_subparsers(dest="command", required=True)

    get_cmd = commands.add_parser("get", help="Download an artifact")
    get_cmd.add_argument("key", help="Artifact key, e.g. releases/app-1.0.tar.gz")
    get_cmd.add_argument("--output", "-o", help="Write to this file instead of stdout")
    get_cmd.add_argument("--via-proxy", action="store_true", help="Fetch through the caching proxy route")

    put_cmd = commands.add_parser("put", help="Upload an artifact")
    put_cmd.add_argument("key", help="Artifact key")
    put_cmd.add_argument("source", help="Local file to upload")

    delete_cmd = commands.add_parser("delete", help="Delete an artifact")
    delete_cmd.add_argument("key", help="Artifact key")
    return parser.parse_args(argv)


def artifact_url(base_url: str, key: str, *, via_proxy: bool = False) -> str:
    route = "proxy" if via_proxy else "files"
    return f"{base_url.rstrip('/')}/{route}/{key.lstrip('/')}"


def _auth_headers(token: Optional[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


async def _file_chunks(path: Path) -> AsyncIterator[bytes]:
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            yield chunk


async def download(client: httpx.AsyncClient, url: str, output: Optional[Path]) -> int:
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        total = 0
        sink = output.open("wb") if output else sys.stdout.buffer
        try:
            async for chunk in response.aiter_bytes():
                sink.write(chunk)
                total += len(chunk)
        finally:
            if output:
                sink.close()
            else:
                sink.flush()
    return total


async def upload(client: httpx.AsyncClient, url: str, source: Path, token: Optional[str]) -> None:
    headers = _auth_headers(token)
    headers["Content-Length"] = str(source.stat().st_size)
    response = await client.put(url, content=_file_chunks(source), headers=headers)
    response.raise_for_status()


async def delete(client: httpx.AsyncClient, url: str, token: Optional[str]) -> None:
    response = await client.delete(url, headers=_auth_headers(token))
    response.raise_for_status()


async def run(args: argparse.Namespace, client: Optional[httpx.AsyncClient] = None) -> int:
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=args.timeout)
    try:
        if args.command == "get":
            url = artifact_url(args.server_url, args.key, via_proxy=args.via_proxy)
            output = Path(args.output) if args.output else None
            total = await download(client, url, output)
            if output:
                print(f"Saved {total} bytes to {output}", file=sys.stderr)
        elif args.command == "put":
            await upload(client, artifact_url(args.server_url, args.key), Path(args.source), args.token)
            print(f"Uploaded {args.source} as {args.key}", file=sys.stderr)
        elif args.command == "delete":
            await delete(client, artifact_url(args.server_url, args.key), args.token)
            print(f"Deleted {args.key}", file=sys.stderr)
    except httpx.HTTPStatusError as exc:
        print(f"Request failed: {exc.response.status_code} {exc.request.url}", file=sys.stderr)
        return 1
    finally:
        if owns_client:
            await client.aclose()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
