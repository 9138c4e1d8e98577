"""piiwatch command line interface."""
