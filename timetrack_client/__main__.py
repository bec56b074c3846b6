from __future__ import annotations

import logging

import uvicorn

from .backend import Backend
from .config import build_connector, load_settings
from .web import create_app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    backend = Backend(build_connector(settings), timezone=settings.tzinfo)
    app = create_app(backend, settings)
    uvicorn.run(app, host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
