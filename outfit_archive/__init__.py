"""outfit-archive: a personal image catalog with free and structured tags."""

__version__ = "1.0.0"
