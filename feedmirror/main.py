from __future__ import annotations

import logging
import os

import uvicorn


def configure_logging() -> None:
    level_name = os.getenv("FEEDMIRROR_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    host = os.getenv("FEEDMIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("FEEDMIRROR_PORT", "8080"))
    uvicorn.run("feedmirror.web_admin:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
