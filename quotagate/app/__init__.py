"""quotagate application package."""
