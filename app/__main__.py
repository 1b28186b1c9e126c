from __future__ import annotations

import argparse

import uvicorn

from app.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Pong service with request instrumentation")
    parser.add_argument("--host", default=settings.host, help="Bind address (env HOST)")
    parser.add_argument("--port", type=int, default=settings.port, help="Listening port (env PORT)")
    args = parser.parse_args()

    # Logging is configured by the app factory; keep uvicorn from replacing it.
    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        log_config=None,
        timeout_keep_alive=settings.idle_timeout_seconds,
        timeout_graceful_shutdown=settings.shutdown_timeout_seconds,
    )


if __name__ == "__main__":
    main()
