"""Package request models, compat ranges and token parsing."""
