"""Tile math, fetching, storage and orchestration for building archives."""
