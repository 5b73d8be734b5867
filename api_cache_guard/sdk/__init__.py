"""
SDK for API Cache Guard.

Provides metered, logged access to the chat completion API.
"""

from .openai_client import GuardedOpenAI

__all__ = ["GuardedOpenAI"]
