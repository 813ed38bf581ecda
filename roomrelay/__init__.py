"""Anonymous room relay bot backend."""
