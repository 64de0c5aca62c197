"""Serve AVIF and WebP variants of raster images, converting on demand."""
__version__ = "1.0.0"
