"""Request throttling and coalescing layer for the career platform API."""
