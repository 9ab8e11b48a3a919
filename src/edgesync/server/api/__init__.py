"""REST API routes for the central node."""
