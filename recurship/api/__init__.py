"""HTTP surface: webhook and admin routes."""
