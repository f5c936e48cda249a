"""Command-line interface for image-inspector."""
