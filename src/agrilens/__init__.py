"""AgriLens field-monitoring API."""

__version__ = "0.1.0"
