"""Command line entry point running the marble game server under uvicorn."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from typing import Sequence

import uvicorn

from .api import create_app
from .config import BackendSettings, load_settings


def parse_args(argv: Sequence[str] | None = None, defaults: BackendSettings | None = None) -> argparse.Namespace:
    settings = defaults if defaults is not None else load_settings()
    parser = argparse.ArgumentParser(description="Marble game server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--seed", type=int, default=settings.seed)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: BackendSettings) -> BackendSettings:
    return dataclasses.replace(
        base,
        host=args.host,
        port=args.port,
        log_level=args.log_level.upper(),
        seed=args.seed,
    )


def main(argv: Sequence[str] | None = None) -> int:
    base = load_settings()
    settings = settings_from_args(parse_args(argv, defaults=base), base)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
