"""Canned command-line output for tests."""
