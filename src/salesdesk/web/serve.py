"""CLI entrypoint: salesdesk-serve"""

import logging

import uvicorn

from salesdesk.core.config import Settings


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = Settings()
    uvicorn.run(
        "salesdesk.web.app:app",
        host=settings.serve_host,
        port=settings.serve_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
