"""GitHub mention bot that dispatches requests to the Claude Code CLI."""

__version__ = "1.0.0"
