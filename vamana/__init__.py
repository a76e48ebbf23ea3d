"""In-memory graph-based approximate nearest neighbour index with updates and persistence."""

__version__ = "0.1.0"