"""File-backed state for the overlay agent."""
