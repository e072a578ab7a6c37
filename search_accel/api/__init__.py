"""HTTP API for the search accelerator."""
