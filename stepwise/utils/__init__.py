"""Small helpers shared across stepwise modules."""
