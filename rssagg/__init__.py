"""RSS aggregator: a JSON API for users, feeds, follows and posts on SQLite, with a background feed scraper."""

__version__ = "0.1.0"