"""REST API routes for the clinicsync server."""
