"""External interfaces: object storage client and HTTP router."""
