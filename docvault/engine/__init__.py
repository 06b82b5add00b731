"""DocVault Engine — Configuration, errors, logging, tokens, sessions, cache."""
