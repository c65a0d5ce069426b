"""Application wiring: configuration profiles, dependency injection, logging."""
