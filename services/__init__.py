"""Outer surfaces of the data layer: the /api/query endpoint and the feed toolkit."""
