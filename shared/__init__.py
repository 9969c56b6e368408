"""Shared schemas, language profiles and extraction helpers."""
