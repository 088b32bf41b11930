"""Optional output backends. Nothing here is needed to generate or load maps."""
