from __future__ import annotations

import argparse
import os

import uvicorn

from azure_openai_proxy.config import load_proxy_config
from azure_openai_proxy.settings import get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azure-openai-proxy",
        description=(
            "Serve an OpenAI-compatible /v1 API backed by Azure OpenAI deployments, "
            "authenticated with the local Azure CLI login."
        ),
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Bind host (default: HOST or 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=int,
        help="Bind port (default: PORT, then the config file, then 3000).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the proxy config file (default: ~/.azure-openai-proxy.json).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Uvicorn log level (default: LOG_LEVEL or info).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    # The server process reads its settings from the environment, so flags are
    # exported before the app starts.
    if args.host:
        os.environ["HOST"] = args.host
    if args.port is not None:
        os.environ["PORT"] = str(args.port)
    if args.config:
        os.environ["AZURE_OPENAI_PROXY_CONFIG_PATH"] = args.config
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    get_settings.cache_clear()

    settings = get_settings()
    port = load_proxy_config(settings).port

    uvicorn.run(
        "azure_openai_proxy.main:app",
        host=settings.host,
        port=port,
        log_level=settings.log_level,
    )


__all__ = ["main"]


if __name__ == "__main__":
    main()
