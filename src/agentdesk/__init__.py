"""Job orchestration runtime: classify, gather knowledge, dispatch capabilities, validate."""

__version__ = "0.1.0"
