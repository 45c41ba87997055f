"""Realtime building blocks for the Huddle chat backend."""
