from __future__ import annotations

import os

import uvicorn

from order_desk.config import load_config
from order_desk.logging import configure_logging
from services.api import create_app


def main() -> None:
    config = load_config()
    configure_logging(config)
    server = config.get("server", {}) or {}
    uvicorn.run(
        create_app(config),
        host=os.getenv("ORDER_DESK_HOST", str(server.get("host", "0.0.0.0"))),
        port=int(os.getenv("ORDER_DESK_PORT", server.get("port", 8000))),
        log_config=None,
    )


if __name__ == "__main__":
    main()
