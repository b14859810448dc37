import re
from typing import Optional

# Diagnostic chatter printed by node and dev servers around the gemini CLI
NOISE_PATTERNS = [
    re.compile(r"\[DEP0040\]"),
    re.compile(r"\[DEP0151\] DeprecationWarning:"),
    re.compile(r"Use `node --trace-deprecation"),
    re.compile(r"Default \"index\" lookups for the main are deprecated for ES modules"),
    re.compile(r"\[vite\] (connecting|connected|server connection lost)"),
    re.compile(r"\[webpack-dev-server\]"),
    re.compile(r"\[HMR\] (Waiting for update signal|connected)"),
]


def is_noise_line(line: str) -> bool:
    return any(p.search(line) for p in NOISE_PATTERNS)


def filter_output(text: Optional[str]) -> str:
    """Drops known noise lines and trims the result.

    Kept lines are returned untouched, including any carriage returns a PTY
    leaves at the end of them.
    """
    if not text:
        return ""
    kept = [line for line in text.split("\n") if not is_noise_line(line)]
    return "\n".join(kept).strip()
