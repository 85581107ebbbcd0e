"""Configuration, logging, errors, storage and reliability primitives."""
