"""Session, message and part models."""
