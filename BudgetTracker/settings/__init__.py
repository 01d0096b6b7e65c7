"""
Settings package: configuration API and application paths.

This package provides:

- :mod:`BudgetTracker.settings.lib` – Config loading, schema validation and path management.
"""
