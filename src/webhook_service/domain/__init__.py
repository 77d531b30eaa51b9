"""Domain models and DTOs."""
