"""Domain entities, key rules, and the typed error taxonomy."""
