"""Project records consumed by schedulers and job handlers."""
