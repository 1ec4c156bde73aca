"""Multi-agent execution and context engine for CLI LLM backends."""

__version__ = "0.1.0"
