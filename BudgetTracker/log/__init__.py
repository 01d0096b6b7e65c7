"""
Logging subsystem.

Modules:

- :mod:`BudgetTracker.log.log` – Root logger setup, Qt message bridge and the in-memory log tank.
"""
