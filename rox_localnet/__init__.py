"""Bootstrap and supervise a local ROX validator network."""

__version__ = "0.3.0"
