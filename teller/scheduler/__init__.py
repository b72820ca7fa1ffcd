"""Background loops and their clock."""
