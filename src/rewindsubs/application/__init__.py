"""Application layer - monitoring services and background workers."""
