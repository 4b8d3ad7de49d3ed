"""instancectl - admin CLI for the Instancer API."""
