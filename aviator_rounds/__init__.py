"""Aviator crash game: round engine, broadcast hub and service surface."""
