"""Chunked upload service with per-chunk analysis and weighted aggregation"""
__version__ = "1.0.0"
