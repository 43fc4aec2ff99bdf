"""SAM v2 medication formulary sync engine."""
