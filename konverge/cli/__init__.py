"""Konverge command-line interface."""
