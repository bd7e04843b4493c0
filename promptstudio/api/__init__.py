"""HTTP API. The ASGI app is promptstudio.api.app:app."""
