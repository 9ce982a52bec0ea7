"""HTTP routers for the 7-ate-9 server."""
