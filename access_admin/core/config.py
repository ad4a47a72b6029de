import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Base URL of the permission authority (the service that owns the permission graph)
AUTHORITY_BASE_URL: str = os.environ.get("AUTHORITY_BASE_URL", "http://127.0.0.1:8080/api")

# Service token sent as a bearer token on every authority call
AUTHORITY_API_TOKEN: Optional[str] = os.environ.get("AUTHORITY_API_TOKEN")

# Per-request timeout for authority calls, in seconds
AUTHORITY_TIMEOUT: float = float(os.environ.get("AUTHORITY_TIMEOUT", "10"))

# Default auto-refresh period, in seconds
AUTO_REFRESH_INTERVAL: float = float(os.environ.get("AUTO_REFRESH_INTERVAL", "30"))

# Number of assignment history entries fetched per refresh
HISTORY_LIMIT: int = int(os.environ.get("HISTORY_LIMIT", "100"))

# Allow requests from this origin
ALLOW_ORIGIN: Optional[str] = os.environ.get("ALLOW_ORIGIN")

# If true, enable docs and openapi.json endpoints
ENABLE_DOCS: bool = os.environ.get("ENABLE_DOCS") == "1"

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()

# If true, project caches started by the HTTP surface refresh themselves periodically
AUTO_REFRESH_ENABLED: bool = os.environ.get("AUTO_REFRESH_ENABLED") == "1"

# Bind address for server.py
HOST: str = os.environ.get("HOST", "127.0.0.1")
PORT: int = int(os.environ.get("PORT", "8000"))

# If true, server.py restarts on code changes
RELOAD: bool = os.environ.get("RELOAD", "1") == "1"

# slowapi limit applied to bulk writes, per Authorization header
WRITE_RATE_LIMIT: str = os.environ.get("WRITE_RATE_LIMIT", "30/minute")
