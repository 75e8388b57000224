"""Certificate handling and XML encryption."""
