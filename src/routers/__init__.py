"""HTTP routers for the token broker."""
