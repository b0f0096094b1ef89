"""Password hashing, token signing and rate limiting."""
