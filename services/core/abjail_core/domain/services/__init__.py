"""Domain services for AB Jail."""
