"""Configuration, preferences and plugins."""
