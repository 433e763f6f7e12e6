"""Run the Perfsim service.

    python -m perfsim --port 3000

Starts the FastAPI app under uvicorn and, unless ``--no-probe`` is given (or
``PROBE_ENABLED=false``), the responsiveness probe sidecar pointed at the same
port.
"""

from __future__ import annotations

import argparse

import uvicorn

from .config import Config
from .logging_utils import log_info
from .server import create_app
from .services import Services


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Perfsim fault-injection service")
    parser.add_argument("--host", default=Config.HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=Config.PORT, help="Port to listen on")
    parser.add_argument(
        "--no-probe",
        action="store_true",
        help="Do not start the responsiveness probe sidecar",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    Config.PORT = args.port
    Config.validate()
    log_info(Config.display())

    if args.no_probe:
        services = Services.build()
    else:
        services = Services.with_probe(args.port)

    uvicorn.run(
        create_app(services),
        host=args.host,
        port=args.port,
        log_level=Config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
