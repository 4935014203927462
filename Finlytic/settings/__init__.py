"""
Settings package: configuration paths and the settings API.

This package provides:

- :mod:`Finlytic.settings.lib` – Core settings management and schema validation.
"""
