"""HTTP clients for external collaborators."""
