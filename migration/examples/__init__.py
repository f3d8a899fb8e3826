"""Example migration configurations."""
