import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_DIR / "data")))
SQLITE_PATH = DATA_DIR / "whitechat.db"

ROOT_PATH = os.environ.get("ROOT_PATH", "")

# "claude" routes through the Agent SDK, "http" through an OpenAI-compatible endpoint
COMPLETION_BACKEND = os.environ.get("COMPLETION_BACKEND", "claude")
MODEL = os.environ.get("MODEL", "claude-sonnet-4-5-20250929")
COMPLETION_API_URL = os.environ.get("COMPLETION_API_URL", "https://api.openai.com/v1")
COMPLETION_API_KEY = os.environ.get("COMPLETION_API_KEY", "")
COMPLETION_TIMEOUT_SECS = float(os.environ.get("COMPLETION_TIMEOUT_SECS", "60"))

DEFAULT_TITLE = "New conversation"
TITLE_MAX_CHARS = 48
TITLE_ELLIPSIS = "…"
FALLBACK_REPLY = "Sorry, I couldn't generate a response. Please try again."
