"""Web back-end for the gemini CLI: one-shot commands and PTY sessions over WebSocket."""

__version__ = "0.1.0"
