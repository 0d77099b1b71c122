"""HTTP surface for recording triggers and status."""
