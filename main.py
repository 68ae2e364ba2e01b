import logging
import os

import uvicorn

from outfit_archive.web import app

if __name__ == "__main__":
    # Library modules log through the standard logging tree; show them next to uvicorn's output.
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:     %(name)s - %(message)s")

    # Set OUTFIT_ARCHIVE_RELOAD=1 to restart on code changes while developing.
    reload = os.getenv("OUTFIT_ARCHIVE_RELOAD", "0") == "1"

    # Change host to 0.0.0.0 if you want other devices in your LAN to reach the archive
    uvicorn.run(
        "outfit_archive.web:app" if reload else app,
        host=os.getenv("OUTFIT_ARCHIVE_HOST", "127.0.0.1"),
        port=int(os.getenv("OUTFIT_ARCHIVE_PORT", "8000")),
        reload=reload,
    )
