"""Registry access and the conversion pipeline."""
