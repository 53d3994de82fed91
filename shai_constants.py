"""Shared constants for shai. No imports from the rest of the package."""

import os
from pathlib import Path

SHAI_HOME = Path(os.getenv("SHAI_HOME", Path.home() / ".shai"))

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_BASE_URL = "http://localhost:11434/v1"

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_PROVIDER = "openai"

DEFAULT_MAX_TURNS = 30
DEFAULT_TOOL_TIMEOUT = 120.0

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8080
