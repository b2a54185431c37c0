"""Shared helpers: UTC time, structured logging, console output."""
