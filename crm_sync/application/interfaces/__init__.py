"""Ports implemented by infrastructure (DIP)."""
