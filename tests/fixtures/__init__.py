"""Shared test fixtures package.

Provides reusable helpers for all test suites. Pytest fixtures that depend
on these helpers are defined in conftest.py files.
"""
