"""Command line interface for the Socratic gateway."""
