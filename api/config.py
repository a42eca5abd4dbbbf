"""Service configuration from environment variables."""

import os

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
PARSE_WORKERS: int = int(os.getenv("PARSE_WORKERS", "1"))
