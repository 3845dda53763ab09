"""Configuration loading for the imager."""
