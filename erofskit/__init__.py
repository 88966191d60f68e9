"""Building blocks for EROFS images: buffer allocation, block lists, hints, chunks, compressed indexes and dump statistics."""

__version__ = "0.1.0"