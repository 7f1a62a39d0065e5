"""Signal gateway: resilient proxy between the analogy client and upstream LLM providers."""

__version__ = "1.0.0"
