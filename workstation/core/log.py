from datetime import datetime
from workstation.core import config

# Message levels each LOG_LEVEL setting lets through
VISIBLE_LEVELS = {
    "NONE": (),
    "INFO": ("ERROR", "INFO"),
    "DEBUG": ("ERROR", "INFO", "DEBUG"),
}


def global_log(msg, level="INFO"):
    """Prints a timestamped line when the current LOG_LEVEL lets `level` through.

    The setting is looked up on every call so /api/system/log-level applies
    immediately.
    """
    if level not in VISIBLE_LEVELS.get(config.LOG_LEVEL, ()):
        return
    stamp = datetime.now().isoformat(sep=" ", timespec="milliseconds")
    print(f"[{stamp}] [{level}] {msg}", flush=True)
