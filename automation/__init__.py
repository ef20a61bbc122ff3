"""Workflow automation engine for the laundry and delivery management platform."""

__version__ = "1.0.0"
