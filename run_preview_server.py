"""Entry point for the webcam preview FastAPI app."""

from __future__ import annotations

import uvicorn

from activeaudit.config import Config

if __name__ == "__main__":
    Config.log_config()
    uvicorn.run("activeaudit.app:app", host="0.0.0.0", port=Config.PREVIEW_API_PORT, reload=False)
