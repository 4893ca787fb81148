"""Core configuration, database, logging and error handling."""
