"""provider-shim: local OpenRouter provider-routing proxy for agent harnesses."""

__version__ = "0.3.0"
