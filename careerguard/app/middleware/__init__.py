"""HTTP middleware and route dependencies for request throttling."""
