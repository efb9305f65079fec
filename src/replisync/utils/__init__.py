"""Shared utilities for replisync."""
