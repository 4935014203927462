"""
Logging subsystem.

Modules:

- :mod:`Finlytic.log.log` – Root logger setup, Qt message bridge and the in-memory tank handler.
"""
