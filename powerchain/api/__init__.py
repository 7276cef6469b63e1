"""HTTP trigger surface."""
