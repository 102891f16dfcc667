"""Services backing the throttling layer."""
