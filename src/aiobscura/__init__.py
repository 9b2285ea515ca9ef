"""aiobscura - observe AI coding assistants through their local logs."""

__version__ = "0.4.0"
