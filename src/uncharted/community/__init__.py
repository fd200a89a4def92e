"""Community feature: levels, XP ledger, profiles and trip groups."""
