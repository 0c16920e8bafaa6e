"""API package for tuition payments."""
