"""Toolgate gateway service: dynamic routing of tool calls to on-demand backends."""

__version__ = "0.1.0"
