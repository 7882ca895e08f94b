"""Core utilities for the Relay backend."""

from .security import create_access_token, create_stream_token, decode_access_token, decode_stream_token

__all__ = ["create_access_token", "decode_access_token", "create_stream_token", "decode_stream_token"]
