"""User accounts and subscription tiers."""
