"""Task model, tree and validation."""
