"""Provider webhook parsing."""
