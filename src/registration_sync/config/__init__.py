"""Configuration for the registration sync service."""
