"""
SDK for AI Batch Guard.

Provides the upstream generation client and row status sinks.
"""

from .openai_client import OpenAIImageGenerator
from .status_sink import NullStatusSink, ObjectStoreStatusSink

__all__ = ["OpenAIImageGenerator", "NullStatusSink", "ObjectStoreStatusSink"]
