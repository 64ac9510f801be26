from __future__ import annotations

import argparse

import uvicorn

from reqpulse.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the reqpulse demo service")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    # Logging is configured in the app lifespan; keep uvicorn from installing its own.
    uvicorn.run("reqpulse.main:app", host=args.host, port=args.port, reload=args.reload, log_config=None)


if __name__ == "__main__":
    main()
