"""Storage adapters for the monetization funnel."""
