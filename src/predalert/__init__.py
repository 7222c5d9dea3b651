"""PredAlert - prediction market intake, scoring and alert selection."""

__version__ = "0.1.0"
