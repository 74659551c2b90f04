"""Front-end development server that forwards backend prefixes to a local API."""

__version__ = "0.1.0"
