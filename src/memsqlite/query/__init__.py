"""Read-only query surface: safety filter, rate limiting, execution."""
