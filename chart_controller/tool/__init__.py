"""Command line tool for chart-controller."""
