from __future__ import annotations

import uvicorn

from healthlog.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "healthlog.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
