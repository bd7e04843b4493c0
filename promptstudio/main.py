"""
PromptStudio - Main entry point.

Runs the API with uvicorn using the host and port from settings:

    promptstudio            # or: python -m promptstudio.main
    uvicorn promptstudio.api.app:app --reload
"""

from __future__ import annotations

import uvicorn

from promptstudio.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "promptstudio.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug and not settings.is_production,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
