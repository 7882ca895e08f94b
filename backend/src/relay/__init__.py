"""Relay realtime delivery and client helpers."""
