"""Tail the VRChat client log and forward matching lines to webhooks."""

__version__ = "0.1.0"
