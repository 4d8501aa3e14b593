"""Event portal authentication core."""
