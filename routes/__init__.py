"""HTTP routers for the prompt mining relay."""
