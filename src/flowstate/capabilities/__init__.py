"""Bundled capabilities. Each module exposes ``register_capabilities(registry)``."""
