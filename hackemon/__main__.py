"""Run the API with uvicorn: ``python -m hackemon`` or the ``hackemon`` script."""

from __future__ import annotations

import argparse

import uvicorn

from hackemon.config import get_settings


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Serve the Hackemon auth API")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    uvicorn.run("hackemon.app:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
