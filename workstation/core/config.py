import os
from dotenv import load_dotenv, set_key

# Load environment variables from .env file if it exists
load_dotenv()

# Server Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Application Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "NONE").upper()
GEMINI_CMD = os.getenv("GEMINI_CMD", "gemini")
DEFAULT_PROJECT_DIR = os.getenv("DEFAULT_PROJECT_DIR", os.path.expanduser("~"))

# Terminal Configuration
PTY_COLS = int(os.getenv("PTY_COLS", "120"))
PTY_ROWS = int(os.getenv("PTY_ROWS", "30"))
PTY_TERM = os.getenv("PTY_TERM", "xterm-256color")
PTY_SCROLLBACK_BYTES = int(os.getenv("PTY_SCROLLBACK_BYTES", "65536"))

# Process Lifetime
COMMAND_TIMEOUT_MS = int(os.getenv("COMMAND_TIMEOUT_MS", "60000"))
KILL_GRACE_SECONDS = float(os.getenv("KILL_GRACE_SECONDS", "3"))

LOG_LEVELS = ["NONE", "INFO", "DEBUG"]
ENV_FILE = os.getenv("ENV_FILE", os.path.join(os.getcwd(), ".env"))


def update_env(key: str, value: str, env_path: str = None):
    """Persists one setting so it survives a restart. Other lines are left as written."""
    env_path = env_path or ENV_FILE
    if not os.path.exists(env_path):
        open(env_path, "a").close()
    set_key(env_path, key, value, quote_mode="never")
