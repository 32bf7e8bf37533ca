"""Build multi-architecture add-on images and publish them to the add-on catalog."""

__version__ = "0.1.0"
