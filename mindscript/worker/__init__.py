"""Render worker for layered meditation audio jobs."""
