"""Source of the remote proxy worker, shipped as package data."""
