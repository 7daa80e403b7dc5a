"""Provider registry and provider-specific clients."""
