"""Application package for the abuse protection service."""
