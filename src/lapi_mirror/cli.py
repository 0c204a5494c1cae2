from __future__ import annotations

import argparse
import asyncio
import json

import uvicorn

from lapi_mirror.core.config import get_settings
from lapi_mirror.core.container import get_sync_engine, get_upstream_client
from lapi_mirror.core.logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LAPI mirror CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=3000)

    sync = sub.add_parser("sync", help="Run one historical sync (if needed) and a delta update")
    sync.add_argument("--clear", action="store_true", help="Wipe the mirror before syncing")

    sub.add_parser("status", help="Print the cache state")
    return parser


async def _sync(clear: bool) -> dict:
    client = get_upstream_client()
    engine = get_sync_engine()
    if client.has_credentials():
        await client.login()
    if clear:
        await engine.clear_cache()
    elif await engine.initialize_cache():
        await engine.update_cache()
    return {
        "sync": engine.get_sync_status().model_dump(mode="json"),
        "cache": engine.get_cache_state().model_dump(mode="json"),
    }


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings.log_level)
    if args.command == "serve":
        uvicorn.run("lapi_mirror.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
    elif args.command == "sync":
        result = asyncio.run(_sync(args.clear))
        print(json.dumps(result, ensure_ascii=False, indent=2))
    elif args.command == "status":
        state = get_sync_engine().get_cache_state()
        print(json.dumps(state.model_dump(mode="json"), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
