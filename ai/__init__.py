"""Model-facing helpers (embedding providers)."""
