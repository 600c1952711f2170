"""Pluggable capabilities and the registry that binds them to ids."""
