"""Run the controller with ``python -m scankiosk``."""
from __future__ import annotations

import uvicorn

from .config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "scankiosk.main:app",
        host=settings.controller_host,
        port=settings.controller_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
