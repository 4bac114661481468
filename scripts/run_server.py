#!/usr/bin/env python3
"""
Run CallBridge under uvicorn using the application's own settings
(.env is read by the settings class).
"""

import uvicorn

from callbridge.core.config import settings


def main():
    print(f"CallBridge on {settings.server_host}:{settings.server_port} ({settings.environment})")
    print(f"Media streams: {settings.media_stream_url}")

    uvicorn.run(
        "callbridge.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
