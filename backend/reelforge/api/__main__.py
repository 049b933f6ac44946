"""API server entry point for python -m reelforge.api"""
import uvicorn

from reelforge.api.app import create_app
from reelforge.config import load_settings

if __name__ == "__main__":
    settings = load_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
