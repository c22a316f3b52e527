"""Background loops: push worker and pull scheduler."""
