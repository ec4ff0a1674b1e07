"""Clients for the upstream data platform."""
