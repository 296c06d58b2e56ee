"""Configuration package for proofcast."""
