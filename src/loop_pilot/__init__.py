"""Loop Pilot - runs a coding agent in repeated iterations against GitHub repos."""

__version__ = "0.1.0"
