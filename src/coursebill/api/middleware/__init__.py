"""Request middleware and principal resolution."""
