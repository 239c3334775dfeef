"""Run the gateway with uvicorn.

Usage:
    python -m modelgate --backend modelgate.engine.fake:FakeBackend
"""

import argparse
import importlib

import uvicorn

from modelgate.config import get_settings
from modelgate.logs import configure_logging
from modelgate.server import create_app


def load_backend(spec: str):
    """Instantiate a backend from a ``module:Class`` import path."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Backend must be given as module:Class, got {spec!r}")
    backend_cls = getattr(importlib.import_module(module_name), attr)
    return backend_cls()


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Model lifecycle inference gateway")
    parser.add_argument("--host", type=str, default=settings.uvicorn_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.uvicorn_port, help="Port to run on")
    parser.add_argument(
        "--backend",
        type=str,
        default=settings.backend,
        help="Backend import path as module:Class",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level, json=settings.log_json)
    app = create_app(load_backend(args.backend), settings)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
