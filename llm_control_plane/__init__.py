"""LLM Control Plane: model catalog, subscriptions and API keys for a shared LLM proxy"""

__version__ = "1.0.0"
