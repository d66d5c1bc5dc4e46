"""llmprobe — discover the real context window and output limits of LLM endpoints."""

__version__ = "0.1.0"
