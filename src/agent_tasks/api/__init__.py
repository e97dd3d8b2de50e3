"""Resource envelope, typed views and manifest parsing."""
