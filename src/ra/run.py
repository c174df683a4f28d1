#!/usr/bin/env python
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger

if __name__ == "__main__":
    logger.info("Certificate RA Service, start running!")
    load_dotenv(Path.cwd() / ".env")
    logger.info(f"当前应用环境：{os.getenv('APP_ENV')}")
    log_level = os.getenv("LOG_LEVEL", "INFO").lower()

    uvicorn.run(
        "src.ra.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("APP_ENV", "development") == "development",
        log_level=log_level,
    )
