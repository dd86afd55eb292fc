"""Scheduling, study sessions and statistics."""
