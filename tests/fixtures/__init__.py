# tests/fixtures/__init__.py
"""Test doubles and fixtures for streamchaos tests."""
