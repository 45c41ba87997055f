"""Core utilities for the Huddle backend."""
