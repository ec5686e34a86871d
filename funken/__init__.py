"""Group chat backend core: configuration, models, JSON logging, MongoDB repositories and JetStream pub/sub."""

__version__ = "0.1.0"