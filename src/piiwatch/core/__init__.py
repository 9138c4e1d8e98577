"""Core primitives shared by every pipeline component."""
