"""Command-line interface for the scrape scheduler."""
