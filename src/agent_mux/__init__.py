"""agent-mux: one CLI contract over several AI coding-agent backends."""

__version__ = "0.1.0"
