"""Core infrastructure: configuration, logging, metadata catalog, access resolution."""
