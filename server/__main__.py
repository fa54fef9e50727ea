"""CLI entrypoint for running the queue API server."""
from __future__ import annotations

import argparse
import os

from observability.logger import configure_logging

from . import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Veo batch queue API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    args = parser.parse_args()

    configure_logging(args.log_level)

    # The reloader imports the app twice; only the child process owns the scheduler thread.
    reloader_child = os.environ.get("WERKZEUG_RUN_MAIN") == "true"
    app = create_app(start_scheduler=not args.debug or reloader_child)

    if not args.debug or reloader_child:
        print(f"Queue API running on http://{args.host}:{args.port}", flush=True)

    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":  # pragma: no cover
    main()
